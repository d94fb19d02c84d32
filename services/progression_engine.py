"""
Progression Engine

Moves an activity along its template's stage graph. try_progress() either
executes an explicitly forced transition or evaluates the automatic
transitions leaving the current stage in declared order and executes the
first whose condition holds. All work for one activity happens under that
activity's row lock, so concurrent calls can never double-transition.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from config import Config
from database import SessionLocal
from models import Activity, TemplateTransition
from services.activity_types import EvaluationContext, get_activity_type
from services.conditions import evaluate, parse_expression
from services.notification_outbox import NotificationEvent, NotificationOutbox
from services.stage_graph import get_stage, get_stages, get_transitions_from
from utils.atomic_transactions import atomic_transaction, require_atomic_transaction
from utils.error_handler import ErrorCode
from utils.exceptions import IntegrityViolation
from utils.helpers import utcnow

logger = logging.getLogger(__name__)

NO_CONDITIONS_MET = "No conditions met for progression"


@dataclass
class ProgressionResult:
    """Outcome of a progression attempt"""

    progressed: bool
    from_stage: Optional[str] = None
    to_stage: Optional[str] = None
    transition_id: Optional[int] = None
    reason: Optional[str] = None
    error_code: Optional[ErrorCode] = None
    new_deadline: Optional[datetime] = None

    @property
    def current_stage(self) -> Optional[str]:
        return self.to_stage if self.progressed else self.from_stage

    def to_dict(self) -> dict:
        return {
            "progressed": self.progressed,
            "from_stage": self.from_stage,
            "to_stage": self.to_stage,
            "current_stage": self.current_stage,
            "transition_id": self.transition_id,
            "reason": self.reason,
            "error_code": self.error_code.value if self.error_code else None,
            "new_deadline": self.new_deadline.isoformat() if self.new_deadline else None,
        }


class ProgressionEngine:
    """Activity-type agnostic stage progression"""

    @classmethod
    @require_atomic_transaction
    def try_progress(
        cls,
        activity_type: str,
        activity_id: int,
        triggered_by: Optional[int] = None,
        forced_transition_id: Optional[int] = None,
        now: Optional[datetime] = None,
        session: Session = None,
    ) -> ProgressionResult:
        handler = get_activity_type(activity_type)
        if handler is None:
            return ProgressionResult(progressed=False, error_code=ErrorCode.UNKNOWN_ACTIVITY_TYPE,
                                     reason=f"Unknown activity type {activity_type}")

        activity = handler.load_stage_state(session, activity_id)
        if activity is None:
            return ProgressionResult(progressed=False, error_code=ErrorCode.ACTIVITY_NOT_FOUND,
                                     reason=f"Activity {activity_id} not found")

        now = now or utcnow()
        current = activity.current_stage_key

        if forced_transition_id is not None:
            transition = session.get(TemplateTransition, forced_transition_id)
            if (
                transition is None
                or transition.template_id != activity.template_id
                or transition.activity_type != activity.activity_type
                or transition.from_stage_key != current
            ):
                logger.info(
                    f"🚫 INVALID_TRANSITION: transition {forced_transition_id} not available from "
                    f"{current} on activity {activity_id}"
                )
                return ProgressionResult(
                    progressed=False,
                    from_stage=current,
                    error_code=ErrorCode.INVALID_TRANSITION,
                    reason=f"Transition {forced_transition_id} does not leave stage {current}",
                )
            logger.info(f"⚙️ FORCED_TRANSITION: activity {activity_id} {current} -> {transition.to_stage_key}")
            return cls.execute_transition(
                activity_type, activity_id, current, transition.to_stage_key,
                triggered_by=triggered_by, transition_id=transition.id, now=now, session=session,
            )

        template = handler.resolve_template(session, activity)
        context = EvaluationContext(session=session, activity=activity, template=template, now=now)
        candidates = get_transitions_from(
            session, activity.template_id, activity.activity_type, current, automatic_only=True
        )
        for transition in candidates:
            expression = parse_expression(transition.condition_expression)
            if evaluate(expression, lambda p: handler.evaluate_predicate(context, p)):
                return cls.execute_transition(
                    activity_type, activity_id, current, transition.to_stage_key,
                    triggered_by=triggered_by, transition_id=transition.id, now=now, session=session,
                )

        return ProgressionResult(progressed=False, from_stage=current, reason=NO_CONDITIONS_MET)

    @classmethod
    @require_atomic_transaction
    def execute_transition(
        cls,
        activity_type: str,
        activity_id: int,
        from_stage: str,
        to_stage: str,
        triggered_by: Optional[int] = None,
        transition_id: Optional[int] = None,
        now: Optional[datetime] = None,
        session: Session = None,
    ) -> ProgressionResult:
        """Move the activity to ``to_stage``, write the timeline and run the destination's hook"""
        handler = get_activity_type(activity_type)
        if handler is None:
            return ProgressionResult(progressed=False, error_code=ErrorCode.UNKNOWN_ACTIVITY_TYPE)
        activity = handler.load_stage_state(session, activity_id)
        if activity is None:
            return ProgressionResult(progressed=False, error_code=ErrorCode.ACTIVITY_NOT_FOUND)

        if activity.current_stage_key != from_stage:
            return ProgressionResult(
                progressed=False,
                from_stage=activity.current_stage_key,
                error_code=ErrorCode.INVALID_TRANSITION,
                reason=f"Activity is in {activity.current_stage_key}, not {from_stage}",
            )

        source = get_stage(session, activity.template_id, activity.activity_type, from_stage)
        destination = get_stage(session, activity.template_id, activity.activity_type, to_stage)
        if source is None or destination is None:
            missing = from_stage if source is None else to_stage
            logger.critical(f"🚨 STAGE_NOT_IN_GRAPH: {missing} for activity {activity_id}")
            raise IntegrityViolation(f"Stage {missing} is not part of template {activity.template_id}")

        now = now or utcnow()
        handler.apply_stage_change(session, activity, destination, now)
        handler.emit_timeline_event(session, activity, source, destination, triggered_by)
        NotificationOutbox.enqueue(
            session,
            NotificationEvent.STAGE_TRANSITION,
            activity.id,
            {
                "activity_uuid": activity.activity_uuid,
                "activity_type": activity.activity_type,
                "from_stage": from_stage,
                "to_stage": to_stage,
                "triggered_by": triggered_by,
                "stage_deadline": activity.stage_deadline.isoformat() if activity.stage_deadline else None,
            },
        )
        session.flush()

        handler.on_stage_entered(session, activity, destination, triggered_by)
        session.flush()

        logger.info(
            f"✅ STAGE_TRANSITION: {activity.activity_type} {activity_id} {from_stage} -> {to_stage} "
            f"(by {triggered_by or 'system'})"
        )
        return ProgressionResult(
            progressed=True,
            from_stage=from_stage,
            to_stage=to_stage,
            transition_id=transition_id,
            new_deadline=activity.stage_deadline,
        )

    @classmethod
    @require_atomic_transaction
    def progress_until_stable(
        cls,
        activity_type: str,
        activity_id: int,
        triggered_by: Optional[int] = None,
        now: Optional[datetime] = None,
        session: Session = None,
    ) -> List[ProgressionResult]:
        """
        Apply automatic transitions until none fires.

        Bounded by the number of stages in the template so a cyclic graph
        cannot spin forever.
        """
        activity = session.get(Activity, activity_id)
        if activity is None:
            return [ProgressionResult(progressed=False, error_code=ErrorCode.ACTIVITY_NOT_FOUND)]
        limit = max(1, len(get_stages(session, activity.template_id, activity.activity_type)))

        steps = []
        for _ in range(limit):
            result = cls.try_progress(
                activity_type, activity_id, triggered_by=triggered_by, now=now, session=session
            )
            steps.append(result)
            if not result.progressed:
                break
        return steps

    # ------------------------------------------------------------------
    # Deadlines
    # ------------------------------------------------------------------

    @staticmethod
    def activities_with_expired_deadlines(session: Session, now: Optional[datetime] = None) -> List[Activity]:
        now = now or utcnow()
        return list(session.execute(
            select(Activity).where(
                Activity.is_completed.is_(False),
                Activity.stage_deadline.isnot(None),
                Activity.stage_deadline <= now,
            ).order_by(Activity.stage_deadline)
        ).scalars())

    @staticmethod
    def activities_approaching_deadline(
        session: Session, warning_days: Optional[int] = None, now: Optional[datetime] = None
    ) -> List[Activity]:
        """Open activities whose stage deadline falls within the warning window"""
        now = now or utcnow()
        days = Config.DEADLINE_WARNING_DAYS if warning_days is None else warning_days
        return list(session.execute(
            select(Activity).where(
                Activity.is_completed.is_(False),
                Activity.stage_deadline.isnot(None),
                Activity.stage_deadline > now,
                Activity.stage_deadline <= now + timedelta(days=days),
            ).order_by(Activity.stage_deadline)
        ).scalars())

    @classmethod
    def process_deadline_progressions(cls, now: Optional[datetime] = None) -> Dict:
        """
        Run progression for every activity whose stage deadline has passed.

        Each activity gets its own transaction; re-running is harmless since
        an activity that already moved has a fresh deadline.
        """
        now = now or utcnow()
        results = {"checked": 0, "progressed": [], "errors": []}

        session = SessionLocal()
        try:
            due = [(a.id, a.activity_type) for a in cls.activities_with_expired_deadlines(session, now)]
        finally:
            session.close()

        for activity_id, activity_type in due:
            results["checked"] += 1
            try:
                with atomic_transaction() as tx_session:
                    outcome = cls.try_progress(activity_type, activity_id, now=now, session=tx_session)
                if outcome.progressed:
                    results["progressed"].append(outcome.to_dict() | {"activity_id": activity_id})
            except IntegrityViolation:
                raise
            except Exception as e:
                logger.error(f"❌ DEADLINE_PROGRESSION_ERROR: activity {activity_id}: {e}")
                results["errors"].append({"activity_id": activity_id, "error": str(e)})

        if due:
            logger.info(
                f"⏰ DEADLINE_PROGRESSION: checked {results['checked']}, "
                f"progressed {len(results['progressed'])}, errors {len(results['errors'])}"
            )
        return results
