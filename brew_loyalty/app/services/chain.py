from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Optional

import requests
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception

from ..core.config import Settings
from ..core.errors import ChainError, ValidationError


logger = logging.getLogger(__name__)

# EIP-1193 "user rejected request"
USER_REJECTED_CODE = 4001

LOYALTY_ABI: list[dict[str, Any]] = [
    {
        "type": "function",
        "name": "buyCoffee",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "customer", "type": "address"},
            {"name": "priceInTokens", "type": "uint256"},
        ],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "addStamp",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "customer", "type": "address"}],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "redeemReward",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "customer", "type": "address"}],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "getStampCount",
        "stateMutability": "view",
        "inputs": [{"name": "customer", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "type": "function",
        "name": "getPendingRewards",
        "stateMutability": "view",
        "inputs": [{"name": "customer", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "type": "function",
        "name": "rewardThreshold",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "type": "function",
        "name": "rewardTokenAmount",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256"}],
    },
]

_RPC_ERRORS = (Web3Exception, ValueError, requests.RequestException, OSError)

PURCHASE_FUNCTIONS = ("buyCoffee", "addStamp")
REDEMPTION_FUNCTIONS = ("redeemReward",)


@dataclass(frozen=True)
class TxResult:
    tx_hash: str
    block_number: int


@dataclass(frozen=True)
class ChainSnapshot:
    stamp_count: int
    pending_rewards: int

    def rank(self) -> tuple[int, int]:
        # Monotonic across a threshold crossing: stamps reset while rewards grow.
        return (self.pending_rewards, self.stamp_count)


class ChainLedgerClient:
    """Adapter over the on-chain loyalty contract.

    Submissions block until the transaction is mined. A mined transaction
    with a failed receipt is raised as ``ChainError("transaction-reverted")``.
    """

    def __init__(
        self,
        web3: Web3,
        contract_address: str,
        account: Any = None,
        *,
        receipt_timeout: float = 120.0,
    ) -> None:
        self.web3 = web3
        self.contract_address = Web3.to_checksum_address(contract_address)
        self.contract = web3.eth.contract(address=self.contract_address, abi=LOYALTY_ABI)
        self.account = account
        self.receipt_timeout = receipt_timeout
        self._send_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------
    def submit_purchase(self, wallet: str, amount: int) -> TxResult:
        return self._transact("buyCoffee", self._checksum(wallet), int(amount))

    def submit_stamp(self, wallet: str) -> TxResult:
        return self._transact("addStamp", self._checksum(wallet))

    def submit_redeem(self, wallet: str) -> TxResult:
        return self._transact("redeemReward", self._checksum(wallet))

    def confirm_transaction(
        self,
        tx_hash: str,
        *,
        functions: Optional[tuple[str, ...]] = None,
        wallet: Optional[str] = None,
    ) -> TxResult:
        """Wait for a transaction someone else submitted and validate it.

        The receipt must show a successful call to the loyalty contract. When
        ``functions`` or ``wallet`` is given, the decoded call must also be one
        of those functions and name that wallet as ``customer``.
        """
        expected_customer = self._checksum(wallet) if wallet is not None else None
        try:
            receipt = self.web3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.receipt_timeout
            )
        except TimeExhausted as exc:
            raise ChainError("receipt-timeout", f"Transaction {tx_hash} was not mined in time") from exc
        except _RPC_ERRORS as exc:
            raise self._translate(exc) from exc

        target = receipt.get("to")
        if target and Web3.to_checksum_address(target) != self.contract_address:
            raise ChainError(
                "foreign-transaction",
                f"Transaction {tx_hash} was not sent to the loyalty contract",
            )
        result = self._check_receipt("confirm", receipt)
        if functions is not None or expected_customer is not None:
            self._check_call(tx_hash, functions, expected_customer)
        return result

    def _check_call(
        self,
        tx_hash: str,
        functions: Optional[tuple[str, ...]],
        expected_customer: Optional[str],
    ) -> None:
        try:
            tx = self.web3.eth.get_transaction(tx_hash)
        except _RPC_ERRORS as exc:
            raise self._translate(exc) from exc
        try:
            function, params = self.contract.decode_function_input(tx["input"])
        except (ValueError, Web3Exception) as exc:
            raise ChainError(
                "foreign-transaction",
                f"Transaction {tx_hash} is not a loyalty contract call",
            ) from exc

        name = function.fn_name
        if functions is not None and name not in functions:
            raise ChainError(
                "foreign-transaction",
                f"Transaction {tx_hash} called {name}, expected one of {', '.join(functions)}",
            )
        customer = params.get("customer")
        if expected_customer is not None and (
            customer is None or Web3.to_checksum_address(customer) != expected_customer
        ):
            raise ChainError(
                "foreign-transaction",
                f"Transaction {tx_hash} was not made for {expected_customer}",
            )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get_stamp_count(self, wallet: str, block_identifier: Any = "latest") -> int:
        return self._call("getStampCount", self._checksum(wallet), block_identifier=block_identifier)

    def get_pending_rewards(self, wallet: str, block_identifier: Any = "latest") -> int:
        return self._call("getPendingRewards", self._checksum(wallet), block_identifier=block_identifier)

    def get_counters(self, wallet: str, block_identifier: Any = "latest") -> ChainSnapshot:
        return ChainSnapshot(
            stamp_count=self.get_stamp_count(wallet, block_identifier),
            pending_rewards=self.get_pending_rewards(wallet, block_identifier),
        )

    def get_reward_threshold(self) -> int:
        return self._call("rewardThreshold")

    def get_reward_token_amount(self) -> int:
        return self._call("rewardTokenAmount")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _checksum(self, wallet: str) -> str:
        try:
            return Web3.to_checksum_address(wallet)
        except ValueError as exc:
            raise ValidationError(f"Invalid wallet address: {wallet}") from exc

    def _call(self, fn_name: str, *args: Any, block_identifier: Any = "latest") -> int:
        function = getattr(self.contract.functions, fn_name)(*args)
        try:
            return int(function.call(block_identifier=block_identifier))
        except ContractLogicError as exc:
            raise ChainError("call-reverted", f"{fn_name} reverted: {exc}") from exc
        except _RPC_ERRORS as exc:
            raise self._translate(exc) from exc

    def _transact(self, fn_name: str, *args: Any) -> TxResult:
        if self.account is None:
            raise ChainError("chain-not-configured", "No signer key configured for chain submissions")

        function = getattr(self.contract.functions, fn_name)(*args)
        try:
            # Nonce allocation and broadcast must not interleave across threads.
            with self._send_lock:
                nonce = self.web3.eth.get_transaction_count(self.account.address, "pending")
                tx = function.build_transaction({"from": self.account.address, "nonce": nonce})
                signed = self.account.sign_transaction(tx)
                tx_hash = self.web3.eth.send_raw_transaction(signed.raw_transaction)
            logger.info(
                "chain.tx.sent",
                extra={"function": fn_name, "tx_hash": Web3.to_hex(tx_hash), "nonce": nonce},
            )
            receipt = self.web3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.receipt_timeout
            )
        except ContractLogicError as exc:
            logger.warning("chain.tx.reverted", extra={"function": fn_name, "error": str(exc)})
            raise ChainError("transaction-reverted", f"{fn_name} reverted: {exc}") from exc
        except TimeExhausted as exc:
            raise ChainError("receipt-timeout", f"{fn_name} was not mined in time") from exc
        except _RPC_ERRORS as exc:
            raise self._translate(exc) from exc

        return self._check_receipt(fn_name, receipt)

    def _check_receipt(self, fn_name: str, receipt: Any) -> TxResult:
        tx_hash = Web3.to_hex(receipt["transactionHash"])
        if int(receipt["status"]) != 1:
            logger.warning("chain.tx.reverted", extra={"function": fn_name, "tx_hash": tx_hash})
            raise ChainError("transaction-reverted", f"Transaction {tx_hash} reverted")
        return TxResult(tx_hash=tx_hash, block_number=int(receipt["blockNumber"]))

    @staticmethod
    def _translate(exc: Exception) -> ChainError:
        payload = exc.args[0] if exc.args else None
        if isinstance(payload, dict) and payload.get("code") == USER_REJECTED_CODE:
            return ChainError("user-rejected", str(payload.get("message") or exc), is_user_rejection=True)
        return ChainError("rpc-unavailable", f"Chain RPC error: {exc}")


def build_chain_client(settings: Settings) -> Optional[ChainLedgerClient]:
    if not settings.chain_configured:
        logger.warning("chain.client.unconfigured")
        return None

    web3 = Web3(Web3.HTTPProvider(settings.rpc_url))
    account = None
    if settings.signer_private_key is not None:
        account = web3.eth.account.from_key(settings.signer_private_key.get_secret_value())

    logger.info(
        "chain.client.ready",
        extra={"rpc_url": settings.rpc_url, "contract": settings.loyalty_address},
    )
    return ChainLedgerClient(
        web3,
        settings.loyalty_address,
        account,
        receipt_timeout=settings.receipt_timeout_seconds,
    )
