"""Payment lifecycle: allowed transitions and the compare-and-swap primitive."""

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from stashu_engine.common.models import utcnow
from stashu_engine.payments.models import PaymentModel

PENDING = "pending"
PROCESSING = "processing"
PAID = "paid"
FAILED = "failed"
MINT_FAILED = "mint_failed"

TRANSITIONS: dict[str, frozenset[str]] = {
    PENDING: frozenset({PROCESSING, FAILED}),
    PROCESSING: frozenset({PAID, FAILED, MINT_FAILED}),
    # Reconciliation only; the invoice was paid so the row never becomes failed
    MINT_FAILED: frozenset({PAID}),
    PAID: frozenset(),
    FAILED: frozenset(),
}


def check_transition(from_state: str, to_state: str) -> None:
    if to_state not in TRANSITIONS.get(from_state, frozenset()):
        raise ValueError(f"Illegal payment transition {from_state} -> {to_state}")


async def transition(
    session: AsyncSession,
    payment_id: str,
    from_states: str | tuple[str, ...],
    to_state: str,
    **values,
) -> bool:
    """Move a payment to ``to_state`` only if it is currently in ``from_states``.

    Returns True if this caller won the update. The conditional UPDATE is the
    only guard against concurrent processing; it holds across processes
    sharing the database.
    """
    if isinstance(from_states, str):
        from_states = (from_states,)
    for from_state in from_states:
        check_transition(from_state, to_state)

    result = await session.execute(
        update(PaymentModel)
        .where(PaymentModel.id == payment_id, PaymentModel.status.in_(from_states))
        .values(status=to_state, updated_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1
