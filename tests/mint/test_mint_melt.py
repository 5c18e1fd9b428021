import asyncio
from typing import List, Tuple

import pytest

from lnmint.core.base import Amount, MeltQuoteState, Method, Proof, Unit
from lnmint.core.errors import (
    LightningPaymentFailedError,
    NotAllowedError,
    PaymentUncertainError,
    ProofNotUnspentError,
    ProofsPendingError,
    QuotePendingError,
    TransactionError,
    TransactionNotBalancedError,
)
from lnmint.core.models import (
    PostMeltQuoteRequest,
    PostMeltQuoteResponse,
    PostMintQuoteRequest,
)
from lnmint.core.settings import settings
from lnmint.mint.ledger import Ledger
from tests.helpers import assert_err, create_outputs, mint_proofs


async def create_invoice(ledger: Ledger, amount: int) -> str:
    """Invoice of a node other than the mint."""
    backend = ledger.backends[Method.bolt11][Unit.sat]
    invoice = await backend.create_invoice(Amount(Unit.sat, amount))
    assert invoice.payment_request
    return invoice.payment_request


async def create_melt_quote(
    ledger: Ledger, amount: int = 64
) -> Tuple[PostMeltQuoteResponse, List[Proof]]:
    """Melt quote for an external invoice and proofs that cover its amount and fee reserve."""
    request = await create_invoice(ledger, amount)
    quote = await ledger.melt_quote(PostMeltQuoteRequest(unit="sat", request=request))
    proofs = await mint_proofs(ledger, quote.amount + quote.fee_reserve)
    return quote, proofs


async def wait_for_quote_state(
    ledger: Ledger, quote_id: str, state: MeltQuoteState, timeout: float = 5
):
    for _ in range(int(timeout / 0.05)):
        quote = await ledger.crud.get_melt_quote(quote_id=quote_id, db=ledger.db)
        if quote and quote.state == state:
            return quote
        await asyncio.sleep(0.05)
    raise AssertionError(f"melt quote {quote_id} did not reach {state}")


@pytest.mark.asyncio
async def test_melt_quote(ledger: Ledger):
    request = await create_invoice(ledger, 64)
    quote = await ledger.melt_quote(PostMeltQuoteRequest(unit="sat", request=request))
    assert quote.amount == 64
    # the minimum fee reserve of 2000 msat applies
    assert quote.fee_reserve == 2
    assert quote.state == MeltQuoteState.unpaid.value
    assert quote.expiry

    quote_db = await ledger.get_melt_quote(quote.quote)
    assert quote_db.unpaid
    assert quote_db.request == request.lower()


@pytest.mark.asyncio
async def test_melt_quote_invalid_request(ledger: Ledger):
    await assert_err(
        ledger.melt_quote(PostMeltQuoteRequest(unit="sat", request="lnbc1notaninvoice")),
        "invalid bolt11 invoice",
    )


@pytest.mark.asyncio
async def test_melt_external_with_change(ledger: Ledger):
    quote, proofs = await create_melt_quote(ledger)
    assert sum(p.amount for p in proofs) == 66
    keyset = ledger.get_active_keyset(Unit.sat)
    outputs, _, _ = create_outputs(keyset.id, [0])

    melt_response = await ledger.melt(proofs=proofs, quote=quote.quote, outputs=outputs)
    assert melt_response.state == MeltQuoteState.paid.value
    assert melt_response.payment_preimage
    # the fake node charges 1 sat of the 2 sat fee reserve
    assert melt_response.change
    assert [c.amount for c in melt_response.change] == [1]

    quote_db = await ledger.get_melt_quote(quote.quote)
    assert quote_db.paid
    assert quote_db.fee_paid == 1
    assert quote_db.paid_time

    states = await ledger.check_state([p.secret for p in proofs])
    assert all(s.spent for s in states)

    # the change signature can be restored
    _, signatures = await ledger.restore(outputs)
    assert [s.amount for s in signatures] == [1]


@pytest.mark.asyncio
async def test_melt_external_without_change(ledger: Ledger):
    quote, proofs = await create_melt_quote(ledger)
    melt_response = await ledger.melt(proofs=proofs, quote=quote.quote)
    assert melt_response.state == MeltQuoteState.paid.value
    assert not melt_response.change


@pytest.mark.asyncio
async def test_melt_paid_quote_twice_fails(ledger: Ledger):
    quote, proofs = await create_melt_quote(ledger)
    await ledger.melt(proofs=proofs, quote=quote.quote)
    proofs2 = await mint_proofs(ledger, 66)
    await assert_err(
        ledger.melt(proofs=proofs2, quote=quote.quote), "melt quote is not unpaid"
    )
    states = await ledger.check_state([p.secret for p in proofs2])
    assert all(s.unspent for s in states)


@pytest.mark.asyncio
async def test_melt_not_enough_inputs(ledger: Ledger):
    request = await create_invoice(ledger, 64)
    quote = await ledger.melt_quote(PostMeltQuoteRequest(unit="sat", request=request))
    # covers the amount but not the fee reserve
    proofs = await mint_proofs(ledger, 64)
    with pytest.raises(TransactionNotBalancedError):
        await ledger.melt(proofs=proofs, quote=quote.quote)
    states = await ledger.check_state([p.secret for p in proofs])
    assert all(s.unspent for s in states)
    quote_db = await ledger.get_melt_quote(quote.quote)
    assert quote_db.unpaid


@pytest.mark.asyncio
async def test_melt_too_many_change_outputs(ledger: Ledger):
    quote, proofs = await create_melt_quote(ledger)
    keyset = ledger.get_active_keyset(Unit.sat)
    outputs, _, _ = create_outputs(keyset.id, [0, 0])
    await assert_err(
        ledger.melt(proofs=proofs, quote=quote.quote, outputs=outputs),
        "too many change outputs",
    )


@pytest.mark.asyncio
async def test_melt_payment_failed(ledger: Ledger):
    quote, proofs = await create_melt_quote(ledger)
    keyset = ledger.get_active_keyset(Unit.sat)
    outputs, _, _ = create_outputs(keyset.id, [0])

    settings.fakewallet_pay_invoice_state = "FAILED"
    settings.fakewallet_payment_state = "FAILED"
    with pytest.raises(LightningPaymentFailedError):
        await ledger.melt(proofs=proofs, quote=quote.quote, outputs=outputs)

    # everything is released
    states = await ledger.check_state([p.secret for p in proofs])
    assert all(s.unspent for s in states)
    quote_db = await ledger.get_melt_quote(quote.quote)
    assert quote_db.unpaid
    blank_outputs = await ledger.crud.get_blinded_messages_melt_id(
        melt_id=quote.quote, db=ledger.db
    )
    assert blank_outputs == []

    # the quote can be paid with the same proofs and outputs
    settings.fakewallet_pay_invoice_state = "SETTLED"
    settings.fakewallet_payment_state = "SETTLED"
    melt_response = await ledger.melt(proofs=proofs, quote=quote.quote, outputs=outputs)
    assert melt_response.state == MeltQuoteState.paid.value


@pytest.mark.asyncio
async def test_melt_payment_uncertain(ledger: Ledger):
    quote, proofs = await create_melt_quote(ledger)
    keyset = ledger.get_active_keyset(Unit.sat)
    outputs, _, _ = create_outputs(keyset.id, [0])

    settings.fakewallet_pay_invoice_state = "UNKNOWN"
    settings.fakewallet_payment_state = "PENDING"
    with pytest.raises(PaymentUncertainError):
        await ledger.melt(proofs=proofs, quote=quote.quote, outputs=outputs)

    # an unknown outcome never releases the proofs
    states = await ledger.check_state([p.secret for p in proofs])
    assert all(s.pending for s in states)
    quote_db = await ledger.get_melt_quote(quote.quote)
    assert quote_db.pending
    assert ledger.disable_melt

    # the pending proofs can't be spent elsewhere
    swap_outputs, _, _ = create_outputs(keyset.id, [p.amount for p in proofs])
    with pytest.raises(ProofsPendingError):
        await ledger.swap(proofs=proofs, outputs=swap_outputs)
    # the quote can't be paid twice
    await assert_err(ledger.melt(proofs=proofs, quote=quote.quote), QuotePendingError())

    # the node later reports the payment as settled without fees
    settings.fakewallet_payment_state = "SETTLED"
    quote_db = await ledger.get_melt_quote(quote.quote)
    assert quote_db.paid
    assert quote_db.fee_paid == 0
    assert quote_db.change and [c.amount for c in quote_db.change] == [2]
    states = await ledger.check_state([p.secret for p in proofs])
    assert all(s.spent for s in states)


@pytest.mark.asyncio
async def test_melt_payment_pending_then_failed(ledger: Ledger):
    quote, proofs = await create_melt_quote(ledger)
    settings.fakewallet_pay_invoice_state = "PENDING"
    settings.fakewallet_payment_state = "PENDING"
    with pytest.raises(PaymentUncertainError):
        await ledger.melt(proofs=proofs, quote=quote.quote)
    quote_db = await ledger.get_melt_quote(quote.quote)
    assert quote_db.pending

    settings.fakewallet_payment_state = "FAILED"
    quote_db = await ledger.get_melt_quote(quote.quote)
    assert quote_db.unpaid
    states = await ledger.check_state([p.secret for p in proofs])
    assert all(s.unspent for s in states)


@pytest.mark.asyncio
async def test_melt_payment_exception(ledger: Ledger):
    quote, proofs = await create_melt_quote(ledger)
    settings.fakewallet_pay_invoice_state_exception = True
    settings.fakewallet_payment_state_exception = True
    with pytest.raises(PaymentUncertainError):
        await ledger.melt(proofs=proofs, quote=quote.quote)
    states = await ledger.check_state([p.secret for p in proofs])
    assert all(s.pending for s in states)

    # the status check keeps failing, the quote stays pending
    quote_db = await ledger.get_melt_quote(quote.quote)
    assert quote_db.pending


@pytest.mark.asyncio
async def test_melt_payment_timeout(ledger: Ledger):
    quote, proofs = await create_melt_quote(ledger)
    settings.fakewallet_delay_outgoing_payment = 2
    settings.mint_lightning_payment_timeout = 0.1
    settings.fakewallet_payment_state = "PENDING"
    with pytest.raises(PaymentUncertainError):
        await ledger.melt(proofs=proofs, quote=quote.quote)
    quote_db = await ledger.get_melt_quote(quote.quote)
    assert quote_db.pending

    # reconciliation settles the quote once the outcome is known
    settings.fakewallet_payment_state = "SETTLED"
    await ledger._check_pending_melt_quotes()
    quote_db = await ledger.get_melt_quote(quote.quote)
    assert quote_db.paid


@pytest.mark.asyncio
async def test_melt_survives_cancellation_of_caller(ledger: Ledger):
    quote, proofs = await create_melt_quote(ledger)
    settings.fakewallet_delay_outgoing_payment = 0.5
    task = asyncio.create_task(ledger.melt(proofs=proofs, quote=quote.quote))
    await wait_for_quote_state(ledger, quote.quote, MeltQuoteState.pending)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    # the payment completes in the background
    await wait_for_quote_state(ledger, quote.quote, MeltQuoteState.paid)
    states = await ledger.check_state([p.secret for p in proofs])
    assert all(s.spent for s in states)


@pytest.mark.asyncio
async def test_melt_concurrent_same_proofs(ledger: Ledger):
    quote1, proofs = await create_melt_quote(ledger)
    request2 = await create_invoice(ledger, 64)
    quote2 = await ledger.melt_quote(PostMeltQuoteRequest(unit="sat", request=request2))
    results = await asyncio.gather(
        ledger.melt(proofs=proofs, quote=quote1.quote),
        ledger.melt(proofs=proofs, quote=quote2.quote),
        return_exceptions=True,
    )
    successes = [r for r in results if not isinstance(r, BaseException)]
    failures = [r for r in results if isinstance(r, BaseException)]
    assert len(successes) == 1
    assert len(failures) == 1
    assert isinstance(failures[0], ProofNotUnspentError)

    # exactly one of the quotes was paid
    quotes = [
        await ledger.get_melt_quote(quote1.quote),
        await ledger.get_melt_quote(quote2.quote),
    ]
    assert sorted(q.state.value for q in quotes) == ["PAID", "UNPAID"]


@pytest.mark.asyncio
async def test_melt_concurrent_same_quote(ledger: Ledger):
    quote, proofs1 = await create_melt_quote(ledger)
    proofs2 = await mint_proofs(ledger, 66)
    settings.fakewallet_delay_outgoing_payment = 0.2
    results = await asyncio.gather(
        ledger.melt(proofs=proofs1, quote=quote.quote),
        ledger.melt(proofs=proofs2, quote=quote.quote),
        return_exceptions=True,
    )
    successes = [r for r in results if not isinstance(r, BaseException)]
    failures = [r for r in results if isinstance(r, BaseException)]
    assert len(successes) == 1
    assert len(failures) == 1
    assert isinstance(failures[0], (QuotePendingError, TransactionError))

    # the proofs of the failed attempt are released
    states1 = await ledger.check_state([p.secret for p in proofs1])
    states2 = await ledger.check_state([p.secret for p in proofs2])
    spent = [all(s.spent for s in states1), all(s.spent for s in states2)]
    unspent = [all(s.unspent for s in states1), all(s.unspent for s in states2)]
    assert sorted(spent) == [False, True]
    assert sorted(unspent) == [False, True]


@pytest.mark.asyncio
async def test_melt_internal(ledger: Ledger):
    proofs = await mint_proofs(ledger, 64)
    settings.fakewallet_brr = False
    mint_quote = await ledger.mint_quote(PostMintQuoteRequest(unit="sat", amount=64))

    melt_quote = await ledger.melt_quote(
        PostMeltQuoteRequest(unit="sat", request=mint_quote.request)
    )
    # internal payments don't pay Lightning fees
    assert melt_quote.fee_reserve == 0
    assert melt_quote.amount == 64

    melt_response = await ledger.melt(proofs=proofs, quote=melt_quote.quote)
    assert melt_response.state == MeltQuoteState.paid.value

    # the mint quote is paid and can be issued
    mint_quote_db = await ledger.get_mint_quote(mint_quote.quote)
    assert mint_quote_db.paid
    keyset = ledger.get_active_keyset(Unit.sat)
    outputs, _, _ = create_outputs(keyset.id, [64])
    promises = await ledger.mint(outputs=outputs, quote_id=mint_quote.quote)
    assert sum(p.amount for p in promises) == 64


@pytest.mark.asyncio
async def test_melt_internal_quote_already_paid(ledger: Ledger):
    proofs = await mint_proofs(ledger, 64)
    settings.fakewallet_brr = False
    mint_quote = await ledger.mint_quote(PostMintQuoteRequest(unit="sat", amount=64))
    melt_quote = await ledger.melt_quote(
        PostMeltQuoteRequest(unit="sat", request=mint_quote.request)
    )
    # the invoice is paid from outside before the melt
    await ledger.invoice_callback_dispatcher(mint_quote.checking_id)

    with pytest.raises(TransactionError):
        await ledger.melt(proofs=proofs, quote=melt_quote.quote)
    states = await ledger.check_state([p.secret for p in proofs])
    assert all(s.unspent for s in states)
    melt_quote_db = await ledger.get_melt_quote(melt_quote.quote)
    assert melt_quote_db.unpaid


async def reserve_internal_melt(ledger: Ledger):
    """Reserves the proofs of an internal melt without settling it, as if the mint
    stopped right after the reservation."""
    proofs = await mint_proofs(ledger, 64)
    settings.fakewallet_brr = False
    mint_quote = await ledger.mint_quote(PostMintQuoteRequest(unit="sat", amount=64))
    melt_quote = await ledger.melt_quote(
        PostMeltQuoteRequest(unit="sat", request=mint_quote.request)
    )
    melt_quote_db = await ledger.crud.get_melt_quote(
        quote_id=melt_quote.quote, db=ledger.db
    )
    assert melt_quote_db
    await ledger.db_write._set_melt_quote_pending(melt_quote_db, proofs)
    return mint_quote, melt_quote, proofs


@pytest.mark.asyncio
async def test_melt_internal_interrupted_is_settled(ledger: Ledger):
    mint_quote, melt_quote, proofs = await reserve_internal_melt(ledger)

    await ledger._check_pending_melt_quotes()

    melt_quote_db = await ledger.get_melt_quote(melt_quote.quote)
    assert melt_quote_db.paid
    states = await ledger.check_state([p.secret for p in proofs])
    assert all(s.spent for s in states)
    mint_quote_db = await ledger.get_mint_quote(mint_quote.quote)
    assert mint_quote_db.paid


@pytest.mark.asyncio
async def test_melt_internal_interrupted_is_released(ledger: Ledger):
    mint_quote, melt_quote, proofs = await reserve_internal_melt(ledger)
    # the invoice is paid from outside while the melt is interrupted
    await ledger.invoice_callback_dispatcher(mint_quote.checking_id)

    await ledger._check_pending_melt_quotes()

    melt_quote_db = await ledger.get_melt_quote(melt_quote.quote)
    assert melt_quote_db.unpaid
    states = await ledger.check_state([p.secret for p in proofs])
    assert all(s.unspent for s in states)

    # the released proofs can be used again
    outputs, _, _ = create_outputs(ledger.get_active_keyset(Unit.sat).id, [64])
    promises = await ledger.swap(proofs=proofs, outputs=outputs)
    assert sum(p.amount for p in promises) == 64


@pytest.mark.asyncio
async def test_melt_disabled_after_error(ledger: Ledger):
    quote, proofs = await create_melt_quote(ledger)
    settings.mint_disable_melt_on_error = True
    ledger.disable_melt = True
    with pytest.raises(NotAllowedError):
        await ledger.melt(proofs=proofs, quote=quote.quote)


@pytest.mark.asyncio
async def test_melt_limits(ledger: Ledger):
    settings.mint_max_peg_out = 10
    request = await create_invoice(ledger, 64)
    await assert_err(
        ledger.melt_quote(PostMeltQuoteRequest(unit="sat", request=request)),
        "Maximum melt amount",
    )


@pytest.mark.asyncio
async def test_get_melt_quote_by_payment_hash(ledger: Ledger):
    quote, proofs = await create_melt_quote(ledger)
    quote_db = await ledger.get_melt_quote(quote.quote)
    by_hash = await ledger.get_melt_quote_by_payment_hash(quote_db.checking_id)
    assert by_hash.quote == quote.quote


@pytest.mark.asyncio
async def test_melt_fee_reserve_minimum_and_change(ledger: Ledger):
    settings.lightning_fee_percent = 0
    settings.lightning_reserve_fee_min = 2000
    request = await create_invoice(ledger, 500)
    quote = await ledger.melt_quote(PostMeltQuoteRequest(unit="sat", request=request))
    assert quote.fee_reserve == 2

    proofs = await mint_proofs(ledger, 502)
    keyset = ledger.get_active_keyset(Unit.sat)
    outputs, _, _ = create_outputs(keyset.id, [0])
    melt_response = await ledger.melt(proofs=proofs, quote=quote.quote, outputs=outputs)
    assert melt_response.state == MeltQuoteState.paid.value
    assert melt_response.change and [c.amount for c in melt_response.change] == [1]
    states = await ledger.check_state([p.secret for p in proofs])
    assert all(s.spent for s in states)
