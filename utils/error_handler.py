"""Error codes, categories and standardized error responses"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from utils.helpers import utcnow

logger = logging.getLogger(__name__)


class ErrorCategory(Enum):
    """Error categories for classification"""

    VALIDATION = "validation"
    AUTHORIZATION = "authorization"
    BUSINESS_LOGIC = "business_logic"
    NOT_FOUND = "not_found"
    CONCURRENCY = "concurrency"
    INTEGRITY = "integrity"


class ErrorCode(str, Enum):
    """Outcome codes carried by service results"""

    # Ledger
    INVALID_AMOUNT = "INVALID_AMOUNT"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    NOT_AUTHORIZED = "NOT_AUTHORIZED"

    # Escrow / awards
    ESCROW_EXHAUSTED = "ESCROW_EXHAUSTED"
    SELF_AWARD = "SELF_AWARD"
    DUPLICATE_AWARD = "DUPLICATE_AWARD"
    UNKNOWN_AWARD_TYPE = "UNKNOWN_AWARD_TYPE"

    # Reviewer team
    ALREADY_MEMBER = "ALREADY_MEMBER"
    TEAM_FULL = "TEAM_FULL"
    NOT_A_MEMBER = "NOT_A_MEMBER"
    INVALID_STATE = "INVALID_STATE"
    IS_AUTHOR = "IS_AUTHOR"
    NOT_ACCEPTING = "NOT_ACCEPTING"

    # Progression / activities
    ACTIVITY_NOT_FOUND = "ACTIVITY_NOT_FOUND"
    TEMPLATE_NOT_FOUND = "TEMPLATE_NOT_FOUND"
    UNKNOWN_ACTIVITY_TYPE = "UNKNOWN_ACTIVITY_TYPE"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    INVALID_STAGE = "INVALID_STAGE"
    INSUFFICIENT_FUNDING = "INSUFFICIENT_FUNDING"
    ALREADY_SUBMITTED = "ALREADY_SUBMITTED"
    NOT_THE_AUTHOR = "NOT_THE_AUTHOR"

    # Finalization
    NOT_A_REVIEWER = "NOT_A_REVIEWER"


@dataclass
class ErrorInfo:
    """How an outcome code is classified and rendered upstream"""

    category: ErrorCategory
    http_status: int
    user_message: str


ERROR_CATALOG: Dict[ErrorCode, ErrorInfo] = {
    ErrorCode.INVALID_AMOUNT: ErrorInfo(ErrorCategory.VALIDATION, 422, "Amount must be a positive number of tokens."),
    ErrorCode.INSUFFICIENT_FUNDS: ErrorInfo(ErrorCategory.BUSINESS_LOGIC, 409, "Not enough tokens in your wallet."),
    ErrorCode.NOT_AUTHORIZED: ErrorInfo(ErrorCategory.AUTHORIZATION, 403, "You are not allowed to perform this action."),
    ErrorCode.ESCROW_EXHAUSTED: ErrorInfo(ErrorCategory.BUSINESS_LOGIC, 409, "This activity has no tokens left to award."),
    ErrorCode.SELF_AWARD: ErrorInfo(ErrorCategory.VALIDATION, 422, "You cannot give an award to yourself."),
    ErrorCode.DUPLICATE_AWARD: ErrorInfo(ErrorCategory.VALIDATION, 409, "You already gave this award in this round."),
    ErrorCode.UNKNOWN_AWARD_TYPE: ErrorInfo(ErrorCategory.VALIDATION, 422, "Unknown award type."),
    ErrorCode.ALREADY_MEMBER: ErrorInfo(ErrorCategory.VALIDATION, 409, "You already joined this review team."),
    ErrorCode.TEAM_FULL: ErrorInfo(ErrorCategory.BUSINESS_LOGIC, 409, "The review team is full."),
    ErrorCode.NOT_A_MEMBER: ErrorInfo(ErrorCategory.BUSINESS_LOGIC, 404, "You are not a member of this review team."),
    ErrorCode.INVALID_STATE: ErrorInfo(ErrorCategory.BUSINESS_LOGIC, 409, "This action is not allowed in the current state."),
    ErrorCode.IS_AUTHOR: ErrorInfo(ErrorCategory.BUSINESS_LOGIC, 409, "Authors cannot review their own paper."),
    ErrorCode.NOT_ACCEPTING: ErrorInfo(ErrorCategory.BUSINESS_LOGIC, 409, "This activity no longer accepts reviewers."),
    ErrorCode.ACTIVITY_NOT_FOUND: ErrorInfo(ErrorCategory.NOT_FOUND, 404, "Activity not found."),
    ErrorCode.TEMPLATE_NOT_FOUND: ErrorInfo(ErrorCategory.NOT_FOUND, 404, "Template not found."),
    ErrorCode.UNKNOWN_ACTIVITY_TYPE: ErrorInfo(ErrorCategory.VALIDATION, 422, "Unknown activity type."),
    ErrorCode.INVALID_TRANSITION: ErrorInfo(ErrorCategory.BUSINESS_LOGIC, 409, "That transition is not available from the current stage."),
    ErrorCode.INVALID_STAGE: ErrorInfo(ErrorCategory.BUSINESS_LOGIC, 409, "This action is not available in the current stage."),
    ErrorCode.INSUFFICIENT_FUNDING: ErrorInfo(ErrorCategory.VALIDATION, 422, "Funding is below what the template requires."),
    ErrorCode.ALREADY_SUBMITTED: ErrorInfo(ErrorCategory.VALIDATION, 409, "This has already been submitted."),
    ErrorCode.NOT_THE_AUTHOR: ErrorInfo(ErrorCategory.AUTHORIZATION, 403, "Only the author can do this."),
    ErrorCode.NOT_A_REVIEWER: ErrorInfo(ErrorCategory.AUTHORIZATION, 403, "Only active reviewers can finalize the assessment."),
}


@dataclass
class StandardError:
    """Standard error response structure"""

    code: str
    message: str
    category: str
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: Optional[str] = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = utcnow().isoformat()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": False,
            "error": {
                "code": self.code,
                "message": self.message,
                "category": self.category,
                "details": self.details,
                "timestamp": self.timestamp,
            },
        }


def http_status_for(code: ErrorCode) -> int:
    info = ERROR_CATALOG.get(code)
    return info.http_status if info else 400


def build_error(code: ErrorCode, details: Optional[Dict[str, Any]] = None) -> StandardError:
    """Render an outcome code as a standard error payload"""
    info = ERROR_CATALOG.get(code)
    if info is None:
        logger.warning(f"⚠️ ERROR_CATALOG_MISS: no entry for {code}")
        return StandardError(code=str(code), message=str(code), category=ErrorCategory.BUSINESS_LOGIC.value,
                             details=details or {})
    return StandardError(
        code=code.value,
        message=info.user_message,
        category=info.category.value,
        details=details or {},
    )
