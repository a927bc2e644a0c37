# Gateway Client: RPC client and instruction builders
#
# Builders produce ledger Instructions with the account order the program
# expects. GatewayClient talks to a node over HTTP (httpx), retrying
# transport failures and 5xx answers with exponential backoff.
#
# Usage::
#
#     client = GatewayClient("http://127.0.0.1:8899")
#     ix = consume_instruction(program_id, backend.pubkey(), gateway, consumer,
#                              treasury, api_key_id, hash_api_key("secret"))
#     receipt = client.send_transaction(Transaction([ix]).sign(backend))

import hashlib
import logging
import time
from typing import Any, Dict, Optional, Tuple

import httpx

from .core import EventSeverity, EventType, get_audit_logger
from .ledger import (
    SYSTEM_PROGRAM_ID,
    Account,
    AccountMeta,
    Instruction,
    Pubkey,
    Transaction,
    TransactionReceipt,
)
from .program import (
    Consume,
    ConsumerAccount,
    GatewayConfig,
    InitializeGateway,
    RegisterConsumer,
    TopUp,
    consumer_pda,
    gateway_pda,
    pack,
)

logger = logging.getLogger(__name__)

# Retry configuration
MAX_RETRIES = 3
INITIAL_BACKOFF_SEC = 0.5
BACKOFF_MULTIPLIER = 2.0
REQUEST_TIMEOUT_SEC = 30


def hash_api_key(api_key: str) -> bytes:
    """SHA-256 of the UTF-8 key text. Only this digest ever reaches the ledger."""
    return hashlib.sha256(api_key.encode("utf-8")).digest()


# ── Instruction builders ─────────────────────────────────────────────


def initialize_gateway_instruction(
    program_id: Pubkey,
    admin: Pubkey,
    treasury: Pubkey,
    backend_signer: Pubkey,
    base_price_lamports: int,
    max_surge_bps: int,
    period_limit: int,
    period_seconds: int,
    bucket_capacity: int,
    refill_per_second: int,
) -> Instruction:
    gateway, _ = gateway_pda(admin, program_id)
    data = pack(
        InitializeGateway(
            base_price_lamports=base_price_lamports,
            max_surge_bps=max_surge_bps,
            period_limit=period_limit,
            period_seconds=period_seconds,
            bucket_capacity=bucket_capacity,
            refill_per_second=refill_per_second,
        )
    )
    return Instruction(
        program_id=program_id,
        accounts=(
            AccountMeta(admin, is_signer=True, is_writable=True),
            AccountMeta(gateway, is_writable=True),
            AccountMeta(treasury),
            AccountMeta(backend_signer),
            AccountMeta(SYSTEM_PROGRAM_ID),
        ),
        data=data,
    )


def register_consumer_instruction(
    program_id: Pubkey,
    owner: Pubkey,
    gateway: Pubkey,
    api_key_id: int,
    api_key_hash: bytes,
) -> Instruction:
    consumer, _ = consumer_pda(gateway, owner, api_key_id, program_id)
    return Instruction(
        program_id=program_id,
        accounts=(
            AccountMeta(owner, is_signer=True, is_writable=True),
            AccountMeta(gateway),
            AccountMeta(consumer, is_writable=True),
            AccountMeta(SYSTEM_PROGRAM_ID),
        ),
        data=pack(RegisterConsumer(api_key_id=api_key_id, api_key_hash=api_key_hash)),
    )


def topup_instruction(program_id: Pubkey, owner: Pubkey, consumer: Pubkey, lamports: int) -> Instruction:
    return Instruction(
        program_id=program_id,
        accounts=(
            AccountMeta(owner, is_signer=True, is_writable=True),
            AccountMeta(consumer, is_writable=True),
            AccountMeta(SYSTEM_PROGRAM_ID),
        ),
        data=pack(TopUp(lamports=lamports)),
    )


def consume_instruction(
    program_id: Pubkey,
    backend: Pubkey,
    gateway: Pubkey,
    consumer: Pubkey,
    treasury: Pubkey,
    api_key_id: int,
    presented_api_key_hash: bytes,
) -> Instruction:
    return Instruction(
        program_id=program_id,
        accounts=(
            AccountMeta(backend, is_signer=True),
            AccountMeta(gateway),
            AccountMeta(consumer, is_writable=True),
            AccountMeta(treasury, is_writable=True),
        ),
        data=pack(Consume(api_key_id=api_key_id, presented_api_key_hash=presented_api_key_hash)),
    )


# ── Errors ───────────────────────────────────────────────────────────


class RpcError(Exception):
    """Raised when the node cannot be reached or answers unexpectedly"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class TransactionFailed(Exception):
    """Raised when the node rejects a transaction; carries the receipt"""

    def __init__(self, receipt: TransactionReceipt):
        self.receipt = receipt
        self.error: Dict[str, Any] = receipt.error or {}
        super().__init__(self.error.get("message", "transaction failed"))

    @property
    def code(self) -> Optional[int]:
        return self.error.get("code")


# ── Client ───────────────────────────────────────────────────────────


class GatewayClient:
    """HTTP client for a gateway node.

    Args:
        rpc_url: Node base URL.
        transport: Optional httpx transport (tests use httpx.MockTransport).
        timeout: Per-request timeout in seconds.
        backoff: Initial retry delay in seconds.
    """

    def __init__(
        self,
        rpc_url: str,
        transport: Optional[httpx.BaseTransport] = None,
        timeout: float = REQUEST_TIMEOUT_SEC,
        backoff: float = INITIAL_BACKOFF_SEC,
    ):
        self.rpc_url = rpc_url.rstrip("/")
        self._backoff = backoff
        self._http = httpx.Client(
            base_url=self.rpc_url,
            transport=transport,
            timeout=timeout,
            headers={"Accept": "application/json", "User-Agent": "OnchainGateway/0.1"},
        )

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "GatewayClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    def _request(self, method: str, path: str, json_body: Optional[Dict[str, Any]] = None) -> httpx.Response:
        resp, _ = self._request_with_attempts(method, path, json_body)
        return resp

    def _request_with_attempts(
        self, method: str, path: str, json_body: Optional[Dict[str, Any]] = None
    ) -> Tuple[httpx.Response, int]:
        """Execute a request with retry + exponential backoff on transport errors and 5xx.

        Returns:
            The response and the number of attempts it took.
        """
        backoff = self._backoff
        last_error = "no attempt made"

        for attempt in range(1, MAX_RETRIES + 1):
            try:
                resp = self._http.request(method, path, json=json_body)
            except httpx.TransportError as exc:
                last_error = str(exc) or type(exc).__name__
            else:
                if resp.status_code < 500:
                    return resp, attempt
                last_error = f"server error {resp.status_code}"

            if attempt < MAX_RETRIES:
                logger.warning(
                    "Node request %s %s failed (%s), retrying in %.1fs (attempt %d/%d)",
                    method, path, last_error, backoff, attempt, MAX_RETRIES,
                )
                time.sleep(backoff)
                backoff *= BACKOFF_MULTIPLIER

        raise RpcError(f"{method} {path} failed after {MAX_RETRIES} attempts: {last_error}")

    @staticmethod
    def _json(resp: httpx.Response) -> Dict[str, Any]:
        try:
            return resp.json()
        except ValueError as e:
            raise RpcError(f"invalid JSON from node: {e}", resp.status_code) from e

    @staticmethod
    def _detail(resp: httpx.Response) -> str:
        try:
            return str(resp.json().get("detail", resp.text))
        except ValueError:
            return resp.text

    # ------------------------------------------------------------------
    # RPC surface
    # ------------------------------------------------------------------

    def health(self) -> Dict[str, Any]:
        resp = self._request("GET", "/health")
        if resp.status_code != 200:
            raise RpcError(self._detail(resp), resp.status_code)
        return self._json(resp)

    def send_transaction(self, tx: Transaction) -> TransactionReceipt:
        """Submit a signed transaction.

        A retried submission whose earlier attempt was committed before the
        connection dropped comes back as DuplicateTransaction; the stored
        receipt of that earlier attempt is returned instead.

        Returns:
            The success receipt.

        Raises:
            TransactionFailed: The ledger rejected the transaction.
            RpcError: Transport failure or unexpected node response.
        """
        resp, attempts = self._request_with_attempts("POST", "/transactions", json_body=tx.to_dict())
        if resp.status_code in (200, 400):
            receipt = TransactionReceipt.from_dict(self._json(resp))
            if receipt.ok:
                return receipt
            if attempts > 1 and (receipt.error or {}).get("name") == "DuplicateTransaction":
                stored = self.get_transaction(tx.signature)
                if stored is not None and stored.ok:
                    logger.info("Transaction %s was committed by an earlier attempt", tx.signature)
                    return stored
            get_audit_logger().log_event(
                event_type=EventType.TX_FAILED,
                severity=EventSeverity.WARNING,
                message=f"Transaction rejected by node: {(receipt.error or {}).get('message')}",
                details={"signature": receipt.signature, "error": receipt.error, "rpc_url": self.rpc_url},
            )
            raise TransactionFailed(receipt)
        raise RpcError(self._detail(resp), resp.status_code)

    def get_transaction(self, signature: str) -> Optional[TransactionReceipt]:
        resp = self._request("GET", f"/transactions/{signature}")
        if resp.status_code == 404:
            return None
        if resp.status_code != 200:
            raise RpcError(self._detail(resp), resp.status_code)
        return TransactionReceipt.from_dict(self._json(resp))

    def get_account(self, address: Pubkey) -> Optional[Account]:
        resp = self._request("GET", f"/accounts/{address}")
        if resp.status_code == 404:
            return None
        if resp.status_code != 200:
            raise RpcError(self._detail(resp), resp.status_code)
        return Account.from_dict(self._json(resp))

    def get_balance(self, address: Pubkey) -> int:
        account = self.get_account(address)
        return account.lamports if account else 0

    def request_airdrop(self, address: Pubkey, lamports: int) -> TransactionReceipt:
        resp = self._request("POST", "/airdrop", json_body={"address": str(address), "lamports": lamports})
        if resp.status_code == 200:
            return TransactionReceipt.from_dict(self._json(resp))
        if resp.status_code == 400:
            body = self._json(resp)
            if "ok" in body:
                raise TransactionFailed(TransactionReceipt.from_dict(body))
        raise RpcError(self._detail(resp), resp.status_code)

    def minimum_balance(self, data_len: int) -> int:
        resp = self._request("GET", f"/rent/{data_len}")
        if resp.status_code != 200:
            raise RpcError(self._detail(resp), resp.status_code)
        return int(self._json(resp)["lamports"])

    # ------------------------------------------------------------------
    # Record readers
    # ------------------------------------------------------------------

    def get_gateway(self, address: Pubkey) -> Optional[GatewayConfig]:
        account = self.get_account(address)
        if account is None:
            return None
        return GatewayConfig.unpack(account.data)

    def get_consumer(self, address: Pubkey) -> Optional[ConsumerAccount]:
        account = self.get_account(address)
        if account is None:
            return None
        return ConsumerAccount.unpack(account.data)
