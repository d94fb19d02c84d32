"""
Progression engine tests
Automatic and forced transitions, idempotency, deadlines and stage hooks
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest
from sqlalchemy import select

from models import Activity, ActivityType, OutboxEvent, TimelineEvent, TimelineEventType
from services.activity_service import ActivityService
from services.activity_types import get_activity_type
from services.conditions import predicate
from services.progression_engine import NO_CONDITIONS_MET, ProgressionEngine
from services.reviewer_team_service import ReviewerTeamService
from services.stage_graph import (
    StageDefinition, TemplateDefinition, TransitionDefinition, create_template, get_template_by_name,
    get_transitions_from
)
from utils.error_handler import ErrorCode
from utils.exceptions import IntegrityViolation
from utils.helpers import utcnow

PEER_REVIEW = ActivityType.PEER_REVIEW.value
JOURNAL_CLUB = ActivityType.JOURNAL_CLUB.value
CREATOR_ID = 100
REVIEWERS = (201, 202, 203)

THREE_REVIEWER_TEMPLATE = TemplateDefinition(
    name="three_reviewer_gate_v1",
    activity_type=PEER_REVIEW,
    user_facing_name="Three Reviewer Gate",
    reviewer_count=3,
    total_tokens=10,
    stages=[
        StageDefinition("review", "Review", 1, is_initial=True),
        StageDefinition("assessment", "Assessment", 2, deadline_days=3),
        StageDefinition("done", "Done", 3, is_terminal=True),
    ],
    transitions=[
        TransitionDefinition(
            "review", "assessment", predicate("min_reviewers_locked_in", min_count=3), transition_order=1
        ),
        TransitionDefinition("assessment", "done", predicate("all_finalized"), transition_order=2),
    ],
)


def join_and_lock(activity_id, reviewer_id):
    assert ReviewerTeamService.join(activity_id, reviewer_id).success
    assert ReviewerTeamService.lock_in(activity_id, reviewer_id).success


@pytest.fixture
def gated_activity_id(fund):
    create_template(THREE_REVIEWER_TEMPLATE)
    fund(CREATOR_ID, 10)
    result = ActivityService.submit_activity(
        "Gated paper", CREATOR_ID, THREE_REVIEWER_TEMPLATE.name, funding_amount=10
    )
    assert result.success
    assert result.current_stage == "review"
    return result.activity_id


@pytest.fixture
def journal_club_id():
    result = ActivityService.submit_activity("Club paper", CREATOR_ID, "journal_club_standard_v1")
    assert result.success
    return result.activity_id


class TestAutomaticProgression:

    def test_three_reviewer_gate_scenario(self, session, gated_activity_id, assert_ledger_consistent):
        for reviewer in REVIEWERS[:2]:
            join_and_lock(gated_activity_id, reviewer)

        result = ProgressionEngine.try_progress(PEER_REVIEW, gated_activity_id)
        assert not result.progressed
        assert result.current_stage == "review"

        join_and_lock(gated_activity_id, REVIEWERS[2])
        result = ProgressionEngine.try_progress(PEER_REVIEW, gated_activity_id, triggered_by=REVIEWERS[2])

        assert result.progressed
        assert result.from_stage == "review"
        assert result.to_stage == "assessment"
        assert result.new_deadline is not None

        activity = session.get(Activity, gated_activity_id)
        assert activity.current_stage_key == "assessment"
        assert activity.stage_deadline == activity.stage_entered_at + timedelta(days=3)
        assert 0 <= activity.escrow_balance <= activity.funding_amount
        assert_ledger_consistent()

    def test_try_progress_is_idempotent(self, gated_activity_id):
        first = ProgressionEngine.try_progress(PEER_REVIEW, gated_activity_id)
        second = ProgressionEngine.try_progress(PEER_REVIEW, gated_activity_id)

        assert not first.progressed
        assert not second.progressed
        assert first.reason == second.reason == NO_CONDITIONS_MET
        assert first.error_code is None

    def test_idempotent_after_progressing(self, gated_activity_id):
        for reviewer in REVIEWERS:
            join_and_lock(gated_activity_id, reviewer)
        assert ProgressionEngine.try_progress(PEER_REVIEW, gated_activity_id).progressed

        again = ProgressionEngine.try_progress(PEER_REVIEW, gated_activity_id)
        assert not again.progressed
        assert again.current_stage == "assessment"

    def test_transition_writes_timeline_and_outbox(self, session, gated_activity_id):
        for reviewer in REVIEWERS:
            join_and_lock(gated_activity_id, reviewer)
        ProgressionEngine.try_progress(PEER_REVIEW, gated_activity_id, triggered_by=CREATOR_ID)

        event = session.execute(
            select(TimelineEvent).where(
                TimelineEvent.activity_id == gated_activity_id,
                TimelineEvent.event_type == TimelineEventType.STAGE_TRANSITION.value,
            )
        ).scalar_one()
        assert event.from_stage_key == "review"
        assert event.stage_key == "assessment"
        assert event.user_id == CREATOR_ID
        assert event.title == "Progressed to Assessment"

        outbox = session.execute(
            select(OutboxEvent).where(OutboxEvent.event_type == "stage_transition")
        ).scalar_one()
        assert outbox.event_data["to_stage"] == "assessment"

    def test_removed_reviewer_no_longer_counts(self, gated_activity_id):
        for reviewer in REVIEWERS:
            join_and_lock(gated_activity_id, reviewer)
        ReviewerTeamService.remove(gated_activity_id, REVIEWERS[0], "withdrew")

        result = ProgressionEngine.try_progress(PEER_REVIEW, gated_activity_id)
        assert not result.progressed

    def test_progress_until_stable_stops_at_first_unsatisfied_guard(self, gated_activity_id):
        for reviewer in REVIEWERS:
            join_and_lock(gated_activity_id, reviewer)

        steps = ProgressionEngine.progress_until_stable(PEER_REVIEW, gated_activity_id)

        assert [step.progressed for step in steps] == [True, False]
        assert steps[-1].current_stage == "assessment"


FIRST_MATCH_TEMPLATE = TemplateDefinition(
    name="first_match_v1",
    activity_type=PEER_REVIEW,
    user_facing_name="First Match",
    reviewer_count=1,
    total_tokens=10,
    stages=[
        StageDefinition("open", "Open", 1, is_initial=True),
        StageDefinition("fast_track", "Fast Track", 2, is_terminal=True),
        StageDefinition("slow_track", "Slow Track", 3, is_terminal=True),
    ],
    transitions=[
        TransitionDefinition("open", "slow_track", predicate("escrow_empty"), transition_order=2),
        TransitionDefinition("open", "fast_track", predicate("manual"), transition_order=1),
    ],
)


class TestTransitionOrder:

    def test_lowest_order_wins_and_later_guards_are_skipped(self, monkeypatch, fund):
        create_template(FIRST_MATCH_TEMPLATE)
        fund(CREATOR_ID, 10)
        activity_id = ActivityService.submit_activity(
            "Ordered paper", CREATOR_ID, FIRST_MATCH_TEMPLATE.name, funding_amount=10
        ).activity_id

        evaluated = []

        def always(name):
            def check(ctx, config):
                evaluated.append(name)
                return True
            return check

        predicates = get_activity_type(PEER_REVIEW).predicates
        monkeypatch.setitem(predicates, "manual", always("manual"))
        monkeypatch.setitem(predicates, "escrow_empty", always("escrow_empty"))

        result = ProgressionEngine.try_progress(PEER_REVIEW, activity_id)

        assert result.progressed
        assert result.to_stage == "fast_track"
        assert evaluated == ["manual"]


class TestConcurrentProgression:

    def test_parallel_try_progress_moves_the_activity_once(self, session, gated_activity_id):
        for reviewer in REVIEWERS:
            join_and_lock(gated_activity_id, reviewer)
        workers = 4
        barrier = threading.Barrier(workers)

        def attempt(_):
            barrier.wait()
            return ProgressionEngine.try_progress(PEER_REVIEW, gated_activity_id)

        with ThreadPoolExecutor(max_workers=workers) as pool:
            results = list(pool.map(attempt, range(workers)))

        assert sum(1 for r in results if r.progressed) == 1
        assert all(r.error_code is None for r in results)
        transitions = session.execute(
            select(TimelineEvent).where(
                TimelineEvent.activity_id == gated_activity_id,
                TimelineEvent.event_type == TimelineEventType.STAGE_TRANSITION.value,
            )
        ).scalars().all()
        assert [(t.from_stage_key, t.stage_key) for t in transitions] == [("review", "assessment")]
        assert session.get(Activity, gated_activity_id).current_stage_key == "assessment"


class TestErrors:

    def test_unknown_activity_type(self, gated_activity_id):
        result = ProgressionEngine.try_progress("xx-activity", gated_activity_id)
        assert result.error_code == ErrorCode.UNKNOWN_ACTIVITY_TYPE

    def test_missing_activity(self):
        result = ProgressionEngine.try_progress(PEER_REVIEW, 4040)
        assert not result.progressed
        assert result.error_code == ErrorCode.ACTIVITY_NOT_FOUND

    def test_activity_of_another_type_is_not_found(self, journal_club_id):
        result = ProgressionEngine.try_progress(PEER_REVIEW, journal_club_id)
        assert result.error_code == ErrorCode.ACTIVITY_NOT_FOUND

    def test_stale_from_stage_is_invalid_transition(self, session, gated_activity_id):
        result = ProgressionEngine.execute_transition(PEER_REVIEW, gated_activity_id, "assessment", "done")

        assert not result.progressed
        assert result.error_code == ErrorCode.INVALID_TRANSITION
        assert session.get(Activity, gated_activity_id).current_stage_key == "review"

    def test_stage_outside_graph_is_integrity_violation(self, session, gated_activity_id):
        with pytest.raises(IntegrityViolation):
            ProgressionEngine.execute_transition(PEER_REVIEW, gated_activity_id, "review", "nowhere")
        assert session.get(Activity, gated_activity_id).current_stage_key == "review"


class TestForcedTransitions:

    def test_manual_only_activity_does_not_progress_automatically(self, journal_club_id):
        result = ProgressionEngine.try_progress(JOURNAL_CLUB, journal_club_id)

        assert not result.progressed
        assert result.current_stage == "jc_created"

    def test_forced_transitions_walk_to_completion(self, session, journal_club_id):
        template = get_template_by_name(session, "journal_club_standard_v1")
        for from_stage in ("jc_created", "jc_review", "jc_assessment"):
            transition = get_transitions_from(session, template.id, JOURNAL_CLUB, from_stage)[0]
            result = ProgressionEngine.try_progress(
                JOURNAL_CLUB, journal_club_id, triggered_by=CREATOR_ID, forced_transition_id=transition.id
            )
            assert result.progressed
            assert result.to_stage == transition.to_stage_key

        activity = session.get(Activity, journal_club_id)
        assert activity.current_stage_key == "jc_awarding"
        assert activity.is_completed
        assert activity.completed_at is not None

    def test_forced_transition_from_wrong_stage(self, session, journal_club_id):
        template = get_template_by_name(session, "journal_club_standard_v1")
        later = get_transitions_from(session, template.id, JOURNAL_CLUB, "jc_review")[0]

        result = ProgressionEngine.try_progress(JOURNAL_CLUB, journal_club_id, forced_transition_id=later.id)

        assert not result.progressed
        assert result.error_code == ErrorCode.INVALID_TRANSITION
        assert result.current_stage == "jc_created"

    def test_forced_transition_from_other_template(self, session, journal_club_id):
        quick = get_template_by_name(session, "quick_review_v1")
        foreign = get_transitions_from(session, quick.id, PEER_REVIEW, "posted")[0]

        result = ProgressionEngine.try_progress(JOURNAL_CLUB, journal_club_id, forced_transition_id=foreign.id)
        assert result.error_code == ErrorCode.INVALID_TRANSITION


class TestDeadlines:

    @pytest.fixture
    def review_activity_id(self, fund):
        fund(CREATOR_ID, 10)
        activity_id = ActivityService.submit_activity("Deadline paper", CREATOR_ID, "quick_review_v1").activity_id
        for reviewer in REVIEWERS:
            ActivityService.join_reviewer_team(activity_id, reviewer)
            ActivityService.lock_in(activity_id, reviewer)
        return activity_id

    def test_lock_ins_move_quick_review_into_review(self, session, review_activity_id):
        activity = session.get(Activity, review_activity_id)
        assert activity.current_stage_key == "review_1"
        assert activity.stage_deadline is not None

    def test_expired_deadline_progresses(self, session, review_activity_id):
        later = utcnow() + timedelta(days=4)

        results = ProgressionEngine.process_deadline_progressions(now=later)

        assert results["checked"] == 1
        assert results["errors"] == []
        assert results["progressed"][0]["activity_id"] == review_activity_id
        assert results["progressed"][0]["to_stage"] == "assessment"
        activity = session.get(Activity, review_activity_id)
        assert activity.current_stage_key == "assessment"
        assert activity.stage_deadline == later + timedelta(days=3)

    def test_deadline_job_is_safe_to_rerun(self, review_activity_id):
        later = utcnow() + timedelta(days=4)
        ProgressionEngine.process_deadline_progressions(now=later)

        again = ProgressionEngine.process_deadline_progressions(now=later)
        assert again["checked"] == 0
        assert again["progressed"] == []

    def test_nothing_due_before_deadline(self, review_activity_id):
        results = ProgressionEngine.process_deadline_progressions()
        assert results == {"checked": 0, "progressed": [], "errors": []}

    def test_approaching_deadline_query(self, session, review_activity_id):
        upcoming = ProgressionEngine.activities_approaching_deadline(session, warning_days=4)
        assert [a.id for a in upcoming] == [review_activity_id]

        assert ProgressionEngine.activities_approaching_deadline(session, warning_days=1) == []
