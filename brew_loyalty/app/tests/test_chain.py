from unittest.mock import MagicMock

import pytest
import requests
from web3.exceptions import ContractLogicError, TimeExhausted

from ..core.config import Settings
from ..core.errors import ChainError, ValidationError
from ..services import ChainLedgerClient, ChainSnapshot, TxResult, build_chain_client

CONTRACT = "0x5FbDB2315678afecb367f032d93F642f64180aa3"
CUSTOMER = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"
OTHER = "0x3C44CdDdB6a900fa2b585dd299e03d12FA4293BC"
TX_HASH = b"\x12" * 32
# Well-known local development key, never funded on a real network.
DEV_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"


def _receipt(status: int = 1, to: str = CONTRACT, block: int = 42) -> dict:
    return {"transactionHash": TX_HASH, "status": status, "blockNumber": block, "to": to}


@pytest.fixture
def web3() -> MagicMock:
    w3 = MagicMock()
    w3.eth.get_transaction_count.return_value = 7
    w3.eth.send_raw_transaction.return_value = TX_HASH
    w3.eth.wait_for_transaction_receipt.return_value = _receipt()
    return w3


@pytest.fixture
def account() -> MagicMock:
    signer = MagicMock()
    signer.address = OTHER
    return signer


@pytest.fixture
def client(web3, account) -> ChainLedgerClient:
    return ChainLedgerClient(web3, CONTRACT.lower(), account, receipt_timeout=5)


def _function(client: ChainLedgerClient, name: str) -> MagicMock:
    return getattr(client.contract.functions, name)


def test_submit_purchase_returns_mined_tx(client, web3, account) -> None:
    result = client.submit_purchase(CUSTOMER.lower(), 300)

    assert result == TxResult(tx_hash="0x" + "12" * 32, block_number=42)
    _function(client, "buyCoffee").assert_called_once_with(CUSTOMER, 300)
    web3.eth.get_transaction_count.assert_called_once_with(OTHER, "pending")
    build = _function(client, "buyCoffee").return_value.build_transaction
    build.assert_called_once_with({"from": OTHER, "nonce": 7})
    account.sign_transaction.assert_called_once_with(build.return_value)
    web3.eth.wait_for_transaction_receipt.assert_called_once_with(TX_HASH, timeout=5)


def test_failed_receipt_is_a_revert(client, web3) -> None:
    web3.eth.wait_for_transaction_receipt.return_value = _receipt(status=0)

    with pytest.raises(ChainError) as excinfo:
        client.submit_redeem(CUSTOMER)

    assert excinfo.value.reason == "transaction-reverted"


def test_contract_logic_error_is_a_revert(client) -> None:
    _function(client, "redeemReward").return_value.build_transaction.side_effect = ContractLogicError(
        "execution reverted: No rewards pending"
    )

    with pytest.raises(ChainError) as excinfo:
        client.submit_redeem(CUSTOMER)

    assert excinfo.value.reason == "transaction-reverted"
    assert not excinfo.value.is_user_rejection


def test_receipt_timeout(client, web3) -> None:
    web3.eth.wait_for_transaction_receipt.side_effect = TimeExhausted("not mined")

    with pytest.raises(ChainError) as excinfo:
        client.submit_stamp(CUSTOMER)

    assert excinfo.value.reason == "receipt-timeout"


def test_user_rejection_is_flagged(client, web3) -> None:
    web3.eth.send_raw_transaction.side_effect = ValueError(
        {"code": 4001, "message": "User rejected the request."}
    )

    with pytest.raises(ChainError) as excinfo:
        client.submit_purchase(CUSTOMER, 1)

    assert excinfo.value.reason == "user-rejected"
    assert excinfo.value.is_user_rejection


def test_transport_failure_is_rpc_unavailable(client, web3) -> None:
    web3.eth.get_transaction_count.side_effect = requests.ConnectionError("connection refused")

    with pytest.raises(ChainError) as excinfo:
        client.submit_purchase(CUSTOMER, 1)

    assert excinfo.value.reason == "rpc-unavailable"


def test_submission_without_signer(web3) -> None:
    client = ChainLedgerClient(web3, CONTRACT)

    with pytest.raises(ChainError) as excinfo:
        client.submit_purchase(CUSTOMER, 1)

    assert excinfo.value.reason == "chain-not-configured"
    web3.eth.send_raw_transaction.assert_not_called()


def test_invalid_wallet_never_reaches_the_node(client, web3) -> None:
    with pytest.raises(ValidationError):
        client.submit_purchase("not-an-address", 1)

    web3.eth.send_raw_transaction.assert_not_called()


def test_reads_at_a_block(client) -> None:
    _function(client, "getStampCount").return_value.call.return_value = 3
    _function(client, "getPendingRewards").return_value.call.return_value = 1

    snapshot = client.get_counters(CUSTOMER.lower(), 41)

    assert snapshot == ChainSnapshot(stamp_count=3, pending_rewards=1)
    _function(client, "getStampCount").return_value.call.assert_called_once_with(block_identifier=41)


def test_reverted_read(client) -> None:
    _function(client, "rewardThreshold").return_value.call.side_effect = ContractLogicError("boom")

    with pytest.raises(ChainError) as excinfo:
        client.get_reward_threshold()

    assert excinfo.value.reason == "call-reverted"


def test_confirm_transaction(client, web3) -> None:
    assert client.confirm_transaction("0x" + "12" * 32).block_number == 42


def test_confirm_rejects_foreign_transaction(client, web3) -> None:
    web3.eth.wait_for_transaction_receipt.return_value = _receipt(to=OTHER)

    with pytest.raises(ChainError) as excinfo:
        client.confirm_transaction("0x" + "12" * 32)

    assert excinfo.value.reason == "foreign-transaction"


def _decodes_as(client: ChainLedgerClient, fn_name: str, customer: str) -> None:
    function = MagicMock()
    function.fn_name = fn_name
    client.contract.decode_function_input.return_value = (function, {"customer": customer})


def test_confirm_checks_the_decoded_call(client, web3) -> None:
    web3.eth.get_transaction.return_value = {"input": "0xdeadbeef"}
    _decodes_as(client, "redeemReward", CUSTOMER.lower())

    result = client.confirm_transaction(
        "0x" + "12" * 32, functions=("redeemReward",), wallet=CUSTOMER
    )

    assert result.block_number == 42
    web3.eth.get_transaction.assert_called_once_with("0x" + "12" * 32)
    client.contract.decode_function_input.assert_called_once_with("0xdeadbeef")


@pytest.mark.parametrize(
    "fn_name, customer, functions",
    [
        ("buyCoffee", CUSTOMER, ("redeemReward",)),
        ("redeemReward", CUSTOMER, ("buyCoffee", "addStamp")),
        ("buyCoffee", OTHER, ("buyCoffee", "addStamp")),
    ],
)
def test_confirm_rejects_mismatched_call(client, web3, fn_name, customer, functions) -> None:
    web3.eth.get_transaction.return_value = {"input": "0xdeadbeef"}
    _decodes_as(client, fn_name, customer)

    with pytest.raises(ChainError) as excinfo:
        client.confirm_transaction("0x" + "12" * 32, functions=functions, wallet=CUSTOMER)

    assert excinfo.value.reason == "foreign-transaction"


def test_confirm_rejects_undecodable_input(client, web3) -> None:
    web3.eth.get_transaction.return_value = {"input": "0x"}
    client.contract.decode_function_input.side_effect = ValueError("Could not find any function")

    with pytest.raises(ChainError) as excinfo:
        client.confirm_transaction("0x" + "12" * 32, functions=("buyCoffee",))

    assert excinfo.value.reason == "foreign-transaction"


def test_confirm_with_invalid_wallet_never_reaches_the_node(client, web3) -> None:
    with pytest.raises(ValidationError):
        client.confirm_transaction("0x" + "12" * 32, functions=("buyCoffee",), wallet="not-an-address")

    web3.eth.wait_for_transaction_receipt.assert_not_called()
    web3.eth.get_transaction.assert_not_called()


def test_build_chain_client_unconfigured() -> None:
    assert build_chain_client(Settings(rpc_url=None, loyalty_address=None)) is None


def test_build_chain_client_with_signer() -> None:
    settings = Settings(
        rpc_url="http://127.0.0.1:8545",
        loyalty_address=CONTRACT,
        signer_private_key=DEV_KEY,
    )

    client = build_chain_client(settings)

    assert client.contract_address == CONTRACT
    assert client.account.address == "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
