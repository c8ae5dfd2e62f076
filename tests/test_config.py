import pytest
from pydantic import ValidationError

from .utils import make_settings


@pytest.mark.parametrize(
    "url",
    [
        "http://127.0.0.1:5005",
        "http://10.0.4.2:5005",
        "http://[::1]:5005",
        "http://rippled:5005",
        "http://ledger.internal:5005",
    ],
)
def test_issuer_seeds_go_to_operator_nodes(url) -> None:
    assert make_settings(LEDGER_RPC_URL=url).issuer_wallets


def test_public_node_is_rejected_while_issuers_are_configured() -> None:
    with pytest.raises(ValidationError):
        make_settings(LEDGER_RPC_URL="https://s.altnet.rippletest.net:51234")


def test_public_node_allowed_when_trusted_or_without_issuers() -> None:
    trusted = make_settings(
        LEDGER_RPC_URL="https://rippled.ops.example.com",
        LEDGER_RPC_TRUSTED_HOSTS=["rippled.ops.example.com"],
    )
    assert trusted.ledger_rpc_url.host == "rippled.ops.example.com"

    read_only = make_settings(LEDGER_RPC_URL="https://s.altnet.rippletest.net:51234", ISSUER_WALLETS=[])
    assert read_only.issuer_wallets == []
