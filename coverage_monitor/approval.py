"""Approval state machine for coverage items."""

from collections.abc import Iterable
from dataclasses import dataclass, field

from .errors import InvalidRequestError, InvalidTransitionError, NotFoundError
from .logging import get_logger
from .records import ApprovalStatus
from .store import CoverageStore
from .utils import utc_now

logger = get_logger(__name__)


# Operators may approve or reject from any state; pending_review and
# auto_approved are only ever assigned at insert time.
OPERATOR_TARGETS = {ApprovalStatus.MANUALLY_APPROVED, ApprovalStatus.REJECTED}

STATE_TRANSITIONS: dict[ApprovalStatus, set[ApprovalStatus]] = {
    state: OPERATOR_TARGETS - {state} for state in ApprovalStatus
}


def determine_approval_status(
    score: int,
    auto_approve_threshold: int = 80,
    review_threshold: int = 50,
) -> ApprovalStatus:
    """Initial status for a freshly scored item."""
    if score >= auto_approve_threshold:
        return ApprovalStatus.AUTO_APPROVED
    if score >= review_threshold:
        return ApprovalStatus.PENDING_REVIEW
    return ApprovalStatus.REJECTED


def allowed_targets(from_state: ApprovalStatus) -> set[ApprovalStatus]:
    return set(STATE_TRANSITIONS.get(from_state, set()))


def can_transition(from_state: ApprovalStatus, to_state: ApprovalStatus) -> bool:
    if from_state == to_state:
        return True
    return to_state in allowed_targets(from_state)


def parse_status(value: str) -> ApprovalStatus:
    try:
        return ApprovalStatus(value)
    except ValueError:
        raise InvalidRequestError(f"Unknown approval status: {value}") from None


@dataclass
class BulkTransitionResult:
    status: ApprovalStatus
    updated: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    skipped: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "approval_status": self.status.value,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "skipped": self.skipped,
        }


class ApprovalWorkflow:
    """Operator-driven status changes, single or bulk."""

    def __init__(self, store: CoverageStore):
        self.store = store

    async def set_status(self, item_id: str, status: ApprovalStatus | str) -> ApprovalStatus:
        """Move one item to ``status``.

        Raises:
            NotFoundError: unknown item
            InvalidTransitionError: the transition is not allowed
        """
        target = status if isinstance(status, ApprovalStatus) else parse_status(status)
        item = await self.store.get_item(item_id)
        if item is None:
            raise NotFoundError(f"Coverage item not found: {item_id}")

        if item.approval_status == target:
            return target
        if not can_transition(item.approval_status, target):
            raise InvalidTransitionError(item_id, item.approval_status.value, target.value)

        await self.store.update_approval_status([item_id], target, utc_now())
        logger.info(
            "Approval status changed",
            item_id=item_id,
            from_status=item.approval_status.value,
            to_status=target.value,
        )
        return target

    async def bulk_set_status(
        self,
        item_ids: Iterable[str],
        status: ApprovalStatus | str,
    ) -> BulkTransitionResult:
        """Validate every item, then apply one batch update to the valid ones."""
        target = status if isinstance(status, ApprovalStatus) else parse_status(status)
        ids = list(dict.fromkeys(item_ids))
        if not ids:
            raise InvalidRequestError("No item ids given")

        result = BulkTransitionResult(status=target)
        items = {item.id: item for item in await self.store.get_items(ids)}

        for item_id in ids:
            item = items.get(item_id)
            if item is None:
                result.skipped[item_id] = "not found"
            elif item.approval_status == target:
                result.unchanged.append(item_id)
            elif can_transition(item.approval_status, target):
                result.updated.append(item_id)
            else:
                result.skipped[item_id] = (
                    f"cannot move from {item.approval_status.value} to {target.value}"
                )

        if result.updated:
            await self.store.update_approval_status(result.updated, target, utc_now())

        logger.info(
            "Bulk approval update",
            status=target.value,
            updated=len(result.updated),
            unchanged=len(result.unchanged),
            skipped=len(result.skipped),
        )
        return result
