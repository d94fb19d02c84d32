"""
Activity Progression & Token Ledger - Database Schema
=====================================================

Schema for templated multi-stage activities attached to academic papers:
- Token wallets and an append-only ledger (the only way balances change)
- Per-activity escrow funded at creation and drained by awards
- Stage graph templates (stages + guarded transitions)
- Reviewer teams, review rounds, collaborative assessment finalization
- Timeline and notification outbox

Wallet rows are mutated only by the ledger service; activity stage and
escrow fields only by the progression engine and escrow service.
"""

from enum import Enum
from sqlalchemy import (
    Column, Integer, BigInteger, String, DateTime, Boolean, Text,
    ForeignKey, UniqueConstraint, Index, CheckConstraint, JSON
)
from sqlalchemy.orm import DeclarativeBase, relationship, Mapped, mapped_column

from utils.helpers import utcnow


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class EntryKind(Enum):
    """Direction of a ledger entry"""
    CREDIT = "credit"
    DEBIT = "debit"


class EntryOrigin(Enum):
    """What caused a ledger entry"""
    ACTIVITY = "activity"
    ADMIN = "admin"
    SYSTEM = "system"


class ActivityType(Enum):
    """Registered activity types sharing the progression engine"""
    PEER_REVIEW = "pr-activity"
    JOURNAL_CLUB = "jc-activity"


class ModerationState(Enum):
    """Moderation lifecycle of an activity"""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class MembershipStatus(Enum):
    """Reviewer-team membership states"""
    JOINED = "joined"
    LOCKED_IN = "locked_in"
    REMOVED = "removed"

    @classmethod
    def active_values(cls):
        return [cls.JOINED.value, cls.LOCKED_IN.value]


class PenaltyType(Enum):
    """Reasons a reviewer is penalized"""
    LATE = "late"
    KICKED_OUT = "kicked_out"


class PublicationOption(Enum):
    """Final choice the author makes after a review completes"""
    PUBLISHED_ON_PLATFORM = "published_on_platform"
    SUBMITTED_EXTERNALLY = "submitted_externally"
    MADE_PRIVATE = "made_private"


class TimelineEventType(Enum):
    """Timeline entries shown on an activity"""
    ACTIVITY_CREATED = "activity_created"
    STAGE_TRANSITION = "stage_transition"
    REVIEWER_JOINED = "reviewer_joined"
    REVIEWER_LOCKED_IN = "reviewer_locked_in"
    REVIEWER_REMOVED = "reviewer_removed"
    REVIEW_SUBMITTED = "review_submitted"
    AUTHOR_RESPONSE_SUBMITTED = "author_response_submitted"
    AWARD_GIVEN = "award_given"
    ASSESSMENT_RESET = "assessment_reset"
    PUBLICATION_CHOSEN = "publication_chosen"
    ACTIVITY_COMPLETED = "activity_completed"


# ============================================================================
# LEDGER
# ============================================================================

class Wallet(Base):
    """Token balance per account, created lazily on first ledger entry"""
    __tablename__ = "wallets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_id: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)
    balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    last_updated = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_wallet_balance_non_negative"),
    )

    def __repr__(self):
        return f"<Wallet(owner_id={self.owner_id}, balance={self.balance})>"


class LedgerEntry(Base):
    """Immutable record of token movement; amount is signed"""
    __tablename__ = "ledger_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    counterparty_id = Column(BigInteger, nullable=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    kind: Mapped[str] = mapped_column(String(10), nullable=False)
    origin: Mapped[str] = mapped_column(String(20), nullable=False)
    admin_id = Column(BigInteger, nullable=True)
    related_activity_id = Column(Integer, ForeignKey("activities.id"), nullable=True)
    related_activity_uuid = Column(String(36), nullable=True)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("kind IN ('credit', 'debit')", name="ck_ledger_kind"),
        CheckConstraint("origin IN ('activity', 'admin', 'system')", name="ck_ledger_origin"),
        CheckConstraint(
            "(kind = 'credit' AND amount > 0) OR (kind = 'debit' AND amount < 0)",
            name="ck_ledger_amount_sign",
        ),
        Index("ix_ledger_entries_owner_created", "owner_id", "created_at"),
        Index("ix_ledger_entries_related_activity", "related_activity_id"),
    )

    def __repr__(self):
        return f"<LedgerEntry(owner_id={self.owner_id}, amount={self.amount}, kind={self.kind})>"


# ============================================================================
# TEMPLATES / STAGE GRAPH
# ============================================================================

class ActivityTemplate(Base):
    """Named, reusable definition of an activity's stages and transitions"""
    __tablename__ = "activity_templates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    activity_type: Mapped[str] = mapped_column(String(30), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    user_facing_name: Mapped[str] = mapped_column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    reviewer_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    insurance_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    parameters = Column(JSON, nullable=False, default=dict)
    is_public: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    display_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    stages = relationship("TemplateStage", back_populates="template", order_by="TemplateStage.stage_order")
    transitions = relationship(
        "TemplateTransition", back_populates="template", order_by="TemplateTransition.transition_order"
    )

    __table_args__ = (
        CheckConstraint("reviewer_count >= 0", name="ck_template_reviewer_count"),
        CheckConstraint("total_tokens >= 0", name="ck_template_total_tokens"),
    )


class TemplateStage(Base):
    """Named phase of an activity with optional deadline policy"""
    __tablename__ = "template_stages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    template_id: Mapped[int] = mapped_column(Integer, ForeignKey("activity_templates.id"), nullable=False)
    activity_type: Mapped[str] = mapped_column(String(30), nullable=False)
    stage_key: Mapped[str] = mapped_column(String(50), nullable=False)
    stage_order: Mapped[int] = mapped_column(Integer, nullable=False)
    deadline_days = Column(Integer, nullable=True)
    warning_days = Column(Integer, nullable=True)
    display_name: Mapped[str] = mapped_column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    is_initial: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_terminal: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    template = relationship("ActivityTemplate", back_populates="stages")

    __table_args__ = (
        UniqueConstraint("template_id", "activity_type", "stage_key", name="uq_template_stage_key"),
        CheckConstraint("deadline_days IS NULL OR deadline_days > 0", name="ck_stage_deadline_positive"),
    )


class TemplateTransition(Base):
    """Declared edge between two stages guarded by a condition expression"""
    __tablename__ = "template_transitions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    template_id: Mapped[int] = mapped_column(Integer, ForeignKey("activity_templates.id"), nullable=False)
    activity_type: Mapped[str] = mapped_column(String(30), nullable=False)
    from_stage_key: Mapped[str] = mapped_column(String(50), nullable=False)
    to_stage_key: Mapped[str] = mapped_column(String(50), nullable=False)
    condition_expression = Column(JSON, nullable=False)
    is_automatic: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    transition_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    template = relationship("ActivityTemplate", back_populates="transitions")

    __table_args__ = (
        Index("ix_template_transitions_from", "template_id", "activity_type", "from_stage_key"),
    )


# ============================================================================
# ACTIVITIES
# ============================================================================

class Paper(Base):
    """Academic paper an activity is attached to"""
    __tablename__ = "papers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    abstract = Column(Text, nullable=True)
    creator_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class Activity(Base):
    """One instance of a templated multi-stage workflow; also holds the stage state"""
    __tablename__ = "activities"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    activity_uuid: Mapped[str] = mapped_column(String(36), nullable=False, unique=True)
    activity_type: Mapped[str] = mapped_column(String(30), nullable=False)
    paper_id: Mapped[int] = mapped_column(Integer, ForeignKey("papers.id"), nullable=False)
    creator_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    template_id: Mapped[int] = mapped_column(Integer, ForeignKey("activity_templates.id"), nullable=False)

    # Escrow
    funding_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    escrow_balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Stage state
    current_stage_key: Mapped[str] = mapped_column(String(50), nullable=False)
    stage_entered_at = Column(DateTime, nullable=False, default=utcnow)
    stage_deadline = Column(DateTime, nullable=True)
    moderation_state: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ModerationState.APPROVED.value
    )
    is_completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    completed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    paper = relationship("Paper")
    template = relationship("ActivityTemplate")

    __table_args__ = (
        CheckConstraint("escrow_balance >= 0", name="ck_activity_escrow_non_negative"),
        CheckConstraint("escrow_balance <= funding_amount", name="ck_activity_escrow_within_funding"),
        Index("ix_activities_type_stage", "activity_type", "current_stage_key"),
        Index("ix_activities_stage_deadline", "stage_deadline"),
    )

    def __repr__(self):
        return (
            f"<Activity(id={self.id}, type={self.activity_type}, "
            f"stage={self.current_stage_key}, escrow={self.escrow_balance}/{self.funding_amount})>"
        )


class ReviewerMembership(Base):
    """Reviewer's participation in one activity"""
    __tablename__ = "reviewer_memberships"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    activity_id: Mapped[int] = mapped_column(Integer, ForeignKey("activities.id"), nullable=False)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=MembershipStatus.JOINED.value)
    joined_at = Column(DateTime, default=utcnow, nullable=False)
    commitment_deadline = Column(DateTime, nullable=True)
    locked_in_at = Column(DateTime, nullable=True)
    removed_at = Column(DateTime, nullable=True)
    removal_reason = Column(String(200), nullable=True)

    __table_args__ = (
        UniqueConstraint("activity_id", "user_id", name="uq_membership_activity_user"),
        CheckConstraint("status IN ('joined', 'locked_in', 'removed')", name="ck_membership_status"),
        Index("ix_memberships_status_deadline", "status", "commitment_deadline"),
    )

    def __repr__(self):
        return f"<ReviewerMembership(activity_id={self.activity_id}, user_id={self.user_id}, status={self.status})>"


class ReviewerPenalty(Base):
    """Penalty posted against a reviewer"""
    __tablename__ = "reviewer_penalties"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    activity_id: Mapped[int] = mapped_column(Integer, ForeignKey("activities.id"), nullable=False)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    penalty_type: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    ledger_entry_id = Column(Integer, ForeignKey("ledger_entries.id"), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("penalty_type IN ('late', 'kicked_out')", name="ck_penalty_type"),
        CheckConstraint("amount >= 0", name="ck_penalty_amount"),
    )


class ReviewSubmission(Base):
    """Review text submitted by a reviewer for one round"""
    __tablename__ = "review_submissions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    activity_id: Mapped[int] = mapped_column(Integer, ForeignKey("activities.id"), nullable=False)
    reviewer_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    round_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    is_initial_evaluation: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    submitted_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("activity_id", "reviewer_id", "round_number", name="uq_review_round"),
    )


class AuthorResponse(Base):
    """Author's rebuttal for one review round"""
    __tablename__ = "author_responses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    activity_id: Mapped[int] = mapped_column(Integer, ForeignKey("activities.id"), nullable=False)
    author_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    round_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    submitted_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("activity_id", "round_number", name="uq_author_response_round"),
    )


# ============================================================================
# ASSESSMENT FINALIZATION
# ============================================================================

class AssessmentDocument(Base):
    """Latest snapshot of the collaborative assessment pad"""
    __tablename__ = "assessment_documents"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    activity_id: Mapped[int] = mapped_column(Integer, ForeignKey("activities.id"), nullable=False, unique=True)
    pad_id = Column(String(100), nullable=True)
    last_content_hash = Column(String(64), nullable=True)
    last_backup_content = Column(Text, nullable=True)
    last_backup_at = Column(DateTime, nullable=True)


class FinalizationStatus(Base):
    """Reviewer's sign-off on the current assessment content"""
    __tablename__ = "finalization_statuses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    activity_id: Mapped[int] = mapped_column(Integer, ForeignKey("activities.id"), nullable=False)
    reviewer_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    is_finalized: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    finalized_at = Column(DateTime, nullable=True)
    content_hash_at_finalization = Column(String(64), nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("activity_id", "reviewer_id", name="uq_finalization_reviewer"),
    )


# ============================================================================
# AWARDS
# ============================================================================

class AwardType(Base):
    """Award catalogue with point values by giver role"""
    __tablename__ = "award_types"

    award_type: Mapped[str] = mapped_column(String(30), primary_key=True)
    description = Column(Text, nullable=True)
    author_points: Mapped[int] = mapped_column(Integer, nullable=False)
    reviewer_points: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        CheckConstraint("author_points > 0 AND reviewer_points > 0", name="ck_award_points_positive"),
    )


class Award(Base):
    """Tokens given from escrow by one participant to another"""
    __tablename__ = "awards"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    activity_id: Mapped[int] = mapped_column(Integer, ForeignKey("activities.id"), nullable=False)
    round_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    giver_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    receiver_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    award_type: Mapped[str] = mapped_column(String(30), ForeignKey("award_types.award_type"), nullable=False)
    points: Mapped[int] = mapped_column(Integer, nullable=False)
    given_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("activity_id", "round_number", "giver_id", "award_type", name="uq_award_per_giver"),
        CheckConstraint("giver_id <> receiver_id", name="ck_award_no_self"),
        CheckConstraint("points > 0", name="ck_award_points"),
    )


class AwardDistributionStatus(Base):
    """Marks that a participant has finished handing out awards"""
    __tablename__ = "award_distribution_statuses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    activity_id: Mapped[int] = mapped_column(Integer, ForeignKey("activities.id"), nullable=False)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    has_distributed_awards: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    distributed_at = Column(DateTime, default=utcnow, nullable=True)

    __table_args__ = (
        UniqueConstraint("activity_id", "user_id", name="uq_award_distribution_user"),
    )


class PublicationChoice(Base):
    """Author's decision once a review has completed"""
    __tablename__ = "publication_choices"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    activity_id: Mapped[int] = mapped_column(Integer, ForeignKey("activities.id"), nullable=False, unique=True)
    choice: Mapped[str] = mapped_column(String(30), nullable=False)
    chosen_by: Mapped[int] = mapped_column(BigInteger, nullable=False)
    chosen_at = Column(DateTime, default=utcnow, nullable=False)
    notes = Column(Text, nullable=True)
    external_submission_details = Column(JSON, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "choice IN ('published_on_platform', 'submitted_externally', 'made_private')",
            name="ck_publication_choice",
        ),
    )


# ============================================================================
# TIMELINE & OUTBOX
# ============================================================================

class TimelineEvent(Base):
    """Append-only history of an activity"""
    __tablename__ = "timeline_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    activity_id: Mapped[int] = mapped_column(Integer, ForeignKey("activities.id"), nullable=False)
    event_type: Mapped[str] = mapped_column(String(40), nullable=False)
    from_stage_key = Column(String(50), nullable=True)
    stage_key = Column(String(50), nullable=True)
    user_id = Column(BigInteger, nullable=True)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_timeline_events_activity_created", "activity_id", "created_at"),
    )


class OutboxEvent(Base):
    """Outbox pattern for reliable notification delivery"""
    __tablename__ = "outbox_events"

    id = Column(Integer, primary_key=True)
    event_type = Column(String(50), nullable=False)
    aggregate_id = Column(String(100), nullable=False)
    event_data = Column(JSON, nullable=False)
    processed = Column(Boolean, default=False, nullable=False)

    # Timestamps
    created_at = Column(DateTime, default=utcnow, nullable=False)
    processed_at = Column(DateTime, nullable=True)

    # Error handling
    retry_count = Column(Integer, default=0, nullable=False)
    last_error = Column(Text, nullable=True)

    __table_args__ = (
        Index('ix_outbox_events_processed', 'processed'),
        Index('ix_outbox_events_event_type', 'event_type'),
        Index('ix_outbox_events_aggregate_id', 'aggregate_id'),
    )

    def __repr__(self):
        return f"<OutboxEvent(event_type={self.event_type}, aggregate_id={self.aggregate_id}, processed={self.processed})>"
