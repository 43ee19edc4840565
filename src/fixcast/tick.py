import logging
from typing import TYPE_CHECKING

from fixcast.exceptions import StoreError

if TYPE_CHECKING:
    from fixcast.escalation import EscalationOutcome, FixService

logger = logging.getLogger(__name__)


async def run_tick(service: "FixService") -> "EscalationOutcome | None":
    """One pass of the escalation loop, as fired by a timer.

    Used for the periodic tick and for the debounced re-checks. A store
    failure is left for the next tick to retry.
    """
    try:
        outcome = await service.run_escalation()
    except StoreError as exc:
        logger.warning("Escalation skipped, retrying on next tick: %s", exc)
        return None
    logger.debug("Tick: %s", outcome.value)
    return outcome
