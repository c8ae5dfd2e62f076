import asyncio
from decimal import Decimal

import pytest

from oss_token.donation.trustline import TF_SET_NO_RIPPLE, TrustLineCapability, matches_trust_line
from oss_token.errors import ConfigurationError, Duplicate, NotFound, UpstreamUnavailable, ValidationError
from oss_token.ledger.codec import to_ledger_currency
from oss_token.ledger.gateway import TrustLine
from oss_token.models import SigningPurpose, TrustLineStatus
from oss_token.store import Collections

from .fakes import PROJECT_ID, seed_project
from .harness import build_harness
from .utils import DONOR, ISSUER


def _line(currency: str = "OSS", issuer: str = ISSUER, limit: str = "100", balance: str = "0") -> TrustLine:
    return TrustLine(currency=currency, issuer=issuer, limit=Decimal(limit), balance=Decimal(balance))


def test_matches_trust_line_checks_issuer_currency_and_headroom() -> None:
    assert matches_trust_line([_line()], "OSS", ISSUER)
    assert not matches_trust_line([_line(issuer="rOtherIssuerXXXXXXXXXXXXXXXXX")], "OSS", ISSUER)
    assert not matches_trust_line([_line(currency="USD")], "OSS", ISSUER)
    assert not matches_trust_line([_line(limit="0")], "OSS", ISSUER)
    assert matches_trust_line([_line(limit="100", balance="90")], "OSS", ISSUER, min_amount=Decimal("10"))
    assert not matches_trust_line([_line(limit="100", balance="95")], "OSS", ISSUER, min_amount=Decimal("10"))


def test_matches_long_token_codes_in_either_encoding() -> None:
    wire = to_ledger_currency("OSSTOKEN")
    assert matches_trust_line([_line(currency=wire)], "OSSTOKEN", ISSUER)


@pytest.mark.asyncio
async def test_existing_trust_line_short_circuits() -> None:
    h = build_harness()
    await seed_project(h.projects)
    h.ledger.add_trust_line(DONOR)

    capability = await h.trustlines.ensure_capability(PROJECT_ID, DONOR)

    assert capability.already_set is True
    assert capability.request is None
    assert h.signing.created == []


@pytest.mark.asyncio
async def test_missing_trust_line_opens_trustset_request() -> None:
    h = build_harness()
    await seed_project(h.projects)

    capability = await h.trustlines.ensure_capability(PROJECT_ID, DONOR)

    assert capability.already_set is False
    request = capability.request
    assert request.status == TrustLineStatus.CREATED
    assert (request.expires_at - request.created_at).total_seconds() == 300
    sent = h.signing.created[0]
    assert sent["purpose"] == SigningPurpose.TRUSTLINE
    assert sent["reference"] == request.id
    assert sent["tx"] == {
        "TransactionType": "TrustSet",
        "Account": DONOR,
        "LimitAmount": {"currency": "OSS", "issuer": ISSUER, "value": "1000000"},
        "Flags": TF_SET_NO_RIPPLE,
    }


@pytest.mark.asyncio
async def test_open_request_blocks_a_second_until_it_expires() -> None:
    h = build_harness()
    await seed_project(h.projects)
    first = await h.trustlines.ensure_capability(PROJECT_ID, DONOR)

    with pytest.raises(Duplicate):
        await h.trustlines.ensure_capability(PROJECT_ID, DONOR)

    h.clock.advance(301)
    second = await h.trustlines.ensure_capability(PROJECT_ID, DONOR)
    assert second.request.id != first.request.id
    assert (await h.trustlines.get_request(first.request.id)).status == TrustLineStatus.EXPIRED


@pytest.mark.asyncio
async def test_foreign_token_or_issuer_is_rejected() -> None:
    h = build_harness()
    await seed_project(h.projects)
    with pytest.raises(ValidationError):
        await h.trustlines.ensure_capability(PROJECT_ID, DONOR, token_code="ABC")
    with pytest.raises(ValidationError):
        await h.trustlines.ensure_capability(PROJECT_ID, DONOR, issuer_address="rOtherIssuerXXXXXXXXXXXXXXXXX")


@pytest.mark.asyncio
async def test_invalid_project_token_is_a_configuration_error() -> None:
    h = build_harness()
    await seed_project(h.projects, token_code="XRP")
    with pytest.raises(ConfigurationError):
        await h.trustlines.ensure_capability(PROJECT_ID, DONOR)


@pytest.mark.asyncio
async def test_completion_is_idempotent_and_only_rejections_stay_closed() -> None:
    h = build_harness()
    await seed_project(h.projects)
    capability = await h.trustlines.ensure_capability(PROJECT_ID, DONOR)
    request_id = capability.request.id

    signed = await h.trustlines.complete_trust_line(request_id, "TRUSTTX")
    again = await h.trustlines.complete_trust_line(request_id, "OTHERTX")
    assert signed.status == TrustLineStatus.SIGNED
    assert again.status == TrustLineStatus.SIGNED
    assert again.ledger_tx_hash == "TRUSTTX"

    expired = await h.trustlines.ensure_capability(PROJECT_ID, "rSecondDonorFFFFFFFFFFFFFFFFF6")
    await h.trustlines.fail_request(expired.request.id, "signing request expired", TrustLineStatus.EXPIRED)
    late = await h.trustlines.complete_trust_line(expired.request.id, "LATETX")
    assert late.status == TrustLineStatus.SIGNED
    assert late.failure_reason is None

    rejected = await h.trustlines.ensure_capability(PROJECT_ID, "rThirdDonorGGGGGGGGGGGGGGGGGG7")
    await h.trustlines.fail_request(rejected.request.id, "signing request rejected")
    still_failed = await h.trustlines.complete_trust_line(rejected.request.id, "ODDTX")
    assert still_failed.status == TrustLineStatus.FAILED

    with pytest.raises(NotFound):
        await h.trustlines.complete_trust_line("missing")


@pytest.mark.asyncio
async def test_concurrent_requests_for_the_same_line_open_only_one() -> None:
    h = build_harness()
    h.signing.delay = 0.01
    await seed_project(h.projects)

    results = await asyncio.gather(
        h.trustlines.ensure_capability(PROJECT_ID, DONOR),
        h.trustlines.ensure_capability(PROJECT_ID, DONOR),
        return_exceptions=True,
    )

    opened = [result for result in results if isinstance(result, TrustLineCapability)]
    rejected = [result for result in results if isinstance(result, Duplicate)]
    assert len(opened) == 1
    assert len(rejected) == 1
    assert len(h.signing.created) == 1
    open_requests = await h.store.query(Collections.TRUSTLINE_REQUESTS, status=TrustLineStatus.CREATED.value)
    assert len(open_requests) == 1


@pytest.mark.asyncio
async def test_signing_failure_releases_the_line_for_a_retry(monkeypatch) -> None:
    h = build_harness()
    await seed_project(h.projects)

    async def unavailable(*args, **kwargs):
        raise UpstreamUnavailable("signing provider down")

    monkeypatch.setattr(h.signing, "create_signing_request", unavailable)
    with pytest.raises(UpstreamUnavailable):
        await h.trustlines.ensure_capability(PROJECT_ID, DONOR)
    monkeypatch.undo()

    capability = await h.trustlines.ensure_capability(PROJECT_ID, DONOR)
    assert capability.already_set is False
    assert capability.request.status == TrustLineStatus.CREATED


@pytest.mark.asyncio
async def test_missing_line_is_signed_then_found_on_the_ledger() -> None:
    h = build_harness()
    await seed_project(h.projects)

    first = await h.trustlines.ensure_capability(PROJECT_ID, DONOR)
    assert first.already_set is False
    assert first.signing.ref == first.request.signing_ref
    assert not await h.trustlines.has_trust_line(DONOR, "OSS", ISSUER)

    # the donor signs the TrustSet and it validates
    h.ledger.add_trust_line(DONOR)
    result = await h.webhooks.handle_status(h.signing.sign(first.signing.ref, DONOR, "TRUSTTX"))
    assert result["status"] == TrustLineStatus.SIGNED.value

    lines = await h.ledger.get_trust_lines(DONOR)
    assert lines[0].limit > 0
    assert await h.trustlines.has_trust_line(DONOR, "OSS", ISSUER)

    second = await h.trustlines.ensure_capability(PROJECT_ID, DONOR)
    assert second.already_set is True
    assert len(h.signing.created) == 1
    stored = await h.trustlines.get_request(first.request.id)
    assert stored.status == TrustLineStatus.SIGNED
    assert stored.ledger_tx_hash == "TRUSTTX"
