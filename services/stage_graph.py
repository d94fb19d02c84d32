"""
Stage graph templates.

A template is pure data: ordered stages plus guarded transitions between
them. Definitions are validated before they are stored:
- stage keys are unique and exactly one stage is initial
- every transition endpoint is a declared stage of the same template and activity type
- terminal stages have no outgoing transitions
- every condition parses and names only predicates the activity type knows
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from models import Activity, ActivityTemplate, ActivityType, TemplateStage, TemplateTransition
from services.conditions import all_of, any_of, parse_expression, predicate, predicate_names
from utils.atomic_transactions import require_atomic_transaction
from utils.exceptions import TemplateDefinitionError, ValidationError

logger = logging.getLogger(__name__)


@dataclass
class StageDefinition:
    stage_key: str
    display_name: str
    stage_order: int
    deadline_days: Optional[int] = None
    warning_days: Optional[int] = None
    description: Optional[str] = None
    is_initial: bool = False
    is_terminal: bool = False


@dataclass
class TransitionDefinition:
    from_stage_key: str
    to_stage_key: str
    condition: Dict[str, Any]
    is_automatic: bool = True
    transition_order: int = 0


@dataclass
class TemplateDefinition:
    name: str
    activity_type: str
    user_facing_name: str
    stages: List[StageDefinition]
    transitions: List[TransitionDefinition]
    reviewer_count: int = 0
    total_tokens: int = 0
    insurance_tokens: int = 0
    description: Optional[str] = None
    parameters: Dict[str, Any] = field(default_factory=dict)
    is_public: bool = True
    display_order: int = 0


def validate_graph(definition: TemplateDefinition, known_predicates: Iterable[str]) -> None:
    """Raise TemplateDefinitionError describing the first problem found"""
    known = set(known_predicates)
    name = definition.name

    if not definition.stages:
        raise TemplateDefinitionError(f"Template {name} declares no stages")

    stage_keys = [stage.stage_key for stage in definition.stages]
    duplicates = {key for key in stage_keys if stage_keys.count(key) > 1}
    if duplicates:
        raise TemplateDefinitionError(f"Template {name} declares duplicate stages: {sorted(duplicates)}")

    initial = [stage.stage_key for stage in definition.stages if stage.is_initial]
    if len(initial) != 1:
        raise TemplateDefinitionError(
            f"Template {name} must have exactly one initial stage, found {len(initial)}"
        )

    for stage in definition.stages:
        if stage.deadline_days is not None and stage.deadline_days <= 0:
            raise TemplateDefinitionError(f"Stage {stage.stage_key} has non-positive deadline_days")

    declared = set(stage_keys)
    terminal = {stage.stage_key for stage in definition.stages if stage.is_terminal}
    for transition in definition.transitions:
        for endpoint in (transition.from_stage_key, transition.to_stage_key):
            if endpoint not in declared:
                raise TemplateDefinitionError(
                    f"Transition {transition.from_stage_key} -> {transition.to_stage_key} "
                    f"references undeclared stage '{endpoint}' in template {name}"
                )
        if transition.from_stage_key in terminal:
            raise TemplateDefinitionError(
                f"Terminal stage {transition.from_stage_key} has an outgoing transition in template {name}"
            )
        expression = parse_expression(transition.condition)
        unknown = predicate_names(expression) - known
        if unknown:
            raise TemplateDefinitionError(
                f"Unknown predicate(s) {sorted(unknown)} for activity type {definition.activity_type}"
            )


@require_atomic_transaction
def create_template(definition: TemplateDefinition, session: Session = None) -> ActivityTemplate:
    """Validate and persist a template with its stages and transitions"""
    from services.activity_types import require_activity_type

    handler = require_activity_type(definition.activity_type)
    validate_graph(definition, handler.predicate_names())

    existing = session.execute(
        select(ActivityTemplate.id).where(ActivityTemplate.name == definition.name)
    ).scalar_one_or_none()
    if existing is not None:
        raise ValidationError(f"Template {definition.name} already exists")

    template = ActivityTemplate(
        activity_type=definition.activity_type,
        name=definition.name,
        user_facing_name=definition.user_facing_name,
        description=definition.description,
        reviewer_count=definition.reviewer_count,
        total_tokens=definition.total_tokens,
        insurance_tokens=definition.insurance_tokens,
        parameters=dict(definition.parameters),
        is_public=definition.is_public,
        display_order=definition.display_order,
    )
    session.add(template)
    session.flush()

    for stage in definition.stages:
        session.add(TemplateStage(
            template_id=template.id,
            activity_type=definition.activity_type,
            stage_key=stage.stage_key,
            stage_order=stage.stage_order,
            deadline_days=stage.deadline_days,
            warning_days=stage.warning_days,
            display_name=stage.display_name,
            description=stage.description,
            is_initial=stage.is_initial,
            is_terminal=stage.is_terminal,
        ))
    for transition in definition.transitions:
        session.add(TemplateTransition(
            template_id=template.id,
            activity_type=definition.activity_type,
            from_stage_key=transition.from_stage_key,
            to_stage_key=transition.to_stage_key,
            condition_expression=transition.condition,
            is_automatic=transition.is_automatic,
            transition_order=transition.transition_order,
        ))
    session.flush()
    logger.info(
        f"🧩 TEMPLATE_CREATED: {definition.name} ({definition.activity_type}) "
        f"with {len(definition.stages)} stages, {len(definition.transitions)} transitions"
    )
    return template


@require_atomic_transaction
def update_template_stage(
    template_id: int, stage_key: str, session: Session = None, **changes
) -> TemplateStage:
    """Edit stage metadata; templates referenced by an activity are immutable"""
    in_use = session.execute(
        select(func.count(Activity.id)).where(Activity.template_id == template_id)
    ).scalar_one()
    if in_use:
        raise ValidationError(f"Template {template_id} is used by {in_use} activities and cannot change")

    stage = session.execute(
        select(TemplateStage).where(
            TemplateStage.template_id == template_id, TemplateStage.stage_key == stage_key
        )
    ).scalar_one_or_none()
    if stage is None:
        raise ValidationError(f"Stage {stage_key} not found in template {template_id}")

    allowed = {"display_name", "description", "deadline_days", "warning_days"}
    for key, value in changes.items():
        if key not in allowed:
            raise ValidationError(f"Stage field {key} cannot be changed")
        if key == "deadline_days" and value is not None and value <= 0:
            raise TemplateDefinitionError("deadline_days must be positive")
        setattr(stage, key, value)
    session.flush()
    return stage


# ----------------------------------------------------------------------
# Loading
# ----------------------------------------------------------------------

def get_template_by_name(session: Session, name: str) -> Optional[ActivityTemplate]:
    return session.execute(
        select(ActivityTemplate).where(ActivityTemplate.name == name)
    ).scalar_one_or_none()


def get_stage(session: Session, template_id: int, activity_type: str, stage_key: str) -> Optional[TemplateStage]:
    return session.execute(
        select(TemplateStage).where(
            TemplateStage.template_id == template_id,
            TemplateStage.activity_type == activity_type,
            TemplateStage.stage_key == stage_key,
        )
    ).scalar_one_or_none()


def get_initial_stage(session: Session, template_id: int, activity_type: str) -> TemplateStage:
    stage = session.execute(
        select(TemplateStage).where(
            TemplateStage.template_id == template_id,
            TemplateStage.activity_type == activity_type,
            TemplateStage.is_initial.is_(True),
        )
    ).scalar_one_or_none()
    if stage is None:
        raise TemplateDefinitionError(f"Template {template_id} has no initial stage")
    return stage


def get_stages(session: Session, template_id: int, activity_type: str) -> List[TemplateStage]:
    return list(session.execute(
        select(TemplateStage)
        .where(TemplateStage.template_id == template_id, TemplateStage.activity_type == activity_type)
        .order_by(TemplateStage.stage_order)
    ).scalars())


def get_transitions_from(
    session: Session, template_id: int, activity_type: str, stage_key: str, automatic_only: bool = False
) -> List[TemplateTransition]:
    """Outgoing transitions in declared order"""
    stmt = select(TemplateTransition).where(
        TemplateTransition.template_id == template_id,
        TemplateTransition.activity_type == activity_type,
        TemplateTransition.from_stage_key == stage_key,
    )
    if automatic_only:
        stmt = stmt.where(TemplateTransition.is_automatic.is_(True))
    stmt = stmt.order_by(TemplateTransition.transition_order, TemplateTransition.id)
    return list(session.execute(stmt).scalars())


# ----------------------------------------------------------------------
# Built-in templates
# ----------------------------------------------------------------------

def _review_start(team_size: int):
    return any_of(
        predicate("first_review_submitted", round_number=1),
        all_of(predicate("min_reviewers_locked_in", min_count=team_size), predicate("all_active_reviewers_locked_in")),
    )


def _review_tail(first_order: int) -> List[TransitionDefinition]:
    return [
        TransitionDefinition(
            "assessment", "awarding",
            any_of(predicate("all_finalized"), predicate("deadline_reached")),
            transition_order=first_order,
        ),
        TransitionDefinition(
            "awarding", "publication_choice",
            any_of(predicate("all_awards_distributed"), predicate("deadline_reached")),
            transition_order=first_order + 1,
        ),
    ]


QUICK_REVIEW = TemplateDefinition(
    name="quick_review_v1",
    activity_type=ActivityType.PEER_REVIEW.value,
    user_facing_name="Quick Review",
    description="One review round, collaborative assessment, awards",
    reviewer_count=3,
    total_tokens=10,
    insurance_tokens=1,
    display_order=1,
    stages=[
        StageDefinition("posted", "Posted", 1, is_initial=True,
                        description="Waiting for the review team to form"),
        StageDefinition("review_1", "Review", 2, deadline_days=3, warning_days=1),
        StageDefinition("assessment", "Assessment", 3, deadline_days=3, warning_days=1),
        StageDefinition("awarding", "Awarding", 4, deadline_days=3, warning_days=1),
        StageDefinition("publication_choice", "Publication Choice", 5, is_terminal=True),
    ],
    transitions=[
        TransitionDefinition(
            "posted", "review_1",
            _review_start(3),
            transition_order=1,
        ),
        TransitionDefinition(
            "review_1", "assessment",
            any_of(predicate("all_reviews_submitted", round_number=1), predicate("deadline_reached")),
            transition_order=2,
        ),
        *_review_tail(3),
    ],
)

THOROUGH_REVIEW = TemplateDefinition(
    name="thorough_review_v1",
    activity_type=ActivityType.PEER_REVIEW.value,
    user_facing_name="Thorough Review",
    description="Two review rounds with an author response in between",
    reviewer_count=4,
    total_tokens=20,
    insurance_tokens=2,
    display_order=2,
    stages=[
        StageDefinition("posted", "Posted", 1, is_initial=True),
        StageDefinition("review_1", "Review Round 1", 2, deadline_days=3, warning_days=1),
        StageDefinition("author_resp_1", "Author Response", 3, deadline_days=14, warning_days=3),
        StageDefinition("review_2", "Review Round 2", 4, deadline_days=14, warning_days=3),
        StageDefinition("assessment", "Assessment", 5, deadline_days=3, warning_days=1),
        StageDefinition("awarding", "Awarding", 6, deadline_days=3, warning_days=1),
        StageDefinition("publication_choice", "Publication Choice", 7, is_terminal=True),
    ],
    transitions=[
        TransitionDefinition(
            "posted", "review_1",
            _review_start(4),
            transition_order=1,
        ),
        TransitionDefinition(
            "review_1", "author_resp_1",
            any_of(predicate("all_reviews_submitted", round_number=1), predicate("deadline_reached")),
            transition_order=2,
        ),
        TransitionDefinition(
            "author_resp_1", "review_2",
            any_of(predicate("author_response_submitted", round_number=1), predicate("deadline_reached")),
            transition_order=3,
        ),
        TransitionDefinition(
            "review_2", "assessment",
            any_of(predicate("all_reviews_submitted", round_number=2), predicate("deadline_reached")),
            transition_order=4,
        ),
        *_review_tail(5),
    ],
)

JOURNAL_CLUB_STANDARD = TemplateDefinition(
    name="journal_club_standard_v1",
    activity_type=ActivityType.JOURNAL_CLUB.value,
    user_facing_name="Journal Club",
    description="Facilitator-driven discussion; every step is advanced manually",
    reviewer_count=12,
    total_tokens=0,
    display_order=10,
    stages=[
        StageDefinition("jc_created", "Created", 1, is_initial=True),
        StageDefinition("jc_review", "Discussion", 2),
        StageDefinition("jc_assessment", "Assessment", 3),
        StageDefinition("jc_awarding", "Wrap-up", 4, is_terminal=True),
    ],
    transitions=[
        TransitionDefinition("jc_created", "jc_review", predicate("manual"), is_automatic=False, transition_order=1),
        TransitionDefinition("jc_review", "jc_assessment", predicate("manual"), is_automatic=False, transition_order=2),
        TransitionDefinition("jc_assessment", "jc_awarding", predicate("manual"), is_automatic=False, transition_order=3),
    ],
)

BUILTIN_TEMPLATES = (QUICK_REVIEW, THOROUGH_REVIEW, JOURNAL_CLUB_STANDARD)


@require_atomic_transaction
def seed_builtin_templates(session: Session = None) -> List[str]:
    """Create any missing built-in template; returns the names created"""
    created = []
    for definition in BUILTIN_TEMPLATES:
        if get_template_by_name(session, definition.name) is None:
            create_template(definition, session=session)
            created.append(definition.name)
    if created:
        logger.info(f"🌱 TEMPLATES_SEEDED: {', '.join(created)}")
    return created
