# Gateway Program: Transition Dispatcher
#
# Entry point the ledger calls for every gateway instruction. Decodes the
# payload once, then runs the matching transition:
#
#   InitializeGateway  admin creates the gateway record at its derived address
#   RegisterConsumer   owner creates a consumer record under a gateway
#   TopUp              owner prepays lamports into the consumer record
#   Consume            backend charges one API call through the engine
#
# Identity checks (signers, record ownership, derived addresses) run before
# any record is written. Records are rewritten only after every check has
# passed; the ledger discards all staged changes if anything raises.

import hmac
import logging
from typing import Iterator, List, assert_never

from ..ledger.errors import ArithmeticOverflow, NotEnoughAccountKeys
from ..ledger.keys import SYSTEM_PROGRAM_ID, Pubkey
from ..ledger.runtime import AccountInfo, InvokeContext
from .errors import GatewayError, GatewayException, map_consume_error
from .instruction import (
    Consume,
    InitializeGateway,
    InstructionDecodeError,
    RegisterConsumer,
    TopUp,
    unpack,
)
from .logic import U64_MAX, apply_consume
from .state import (
    ConsumerAccount,
    GatewayConfig,
    LayoutError,
    consumer_address_matches,
    consumer_pda,
    consumer_seeds,
    gateway_address_matches,
    gateway_pda,
    gateway_seeds,
)

logger = logging.getLogger(__name__)

# Surge above 100% is rejected when the gateway is created
MAX_SURGE_BPS = 10_000


def process_instruction(
    program_id: Pubkey,
    accounts: List[AccountInfo],
    instruction_data: bytes,
    ctx: InvokeContext,
) -> None:
    """Decode and run one gateway instruction.

    Raises:
        GatewayException: Any gateway rejection (stable error code).
        ProgramError: Host-level failures (missing accounts, funds).
    """
    try:
        instruction = unpack(instruction_data)
    except InstructionDecodeError as e:
        logger.debug("Rejected instruction payload: %s", e)
        raise GatewayException(GatewayError.INVALID_INSTRUCTION) from e

    match instruction:
        case InitializeGateway():
            _process_initialize_gateway(program_id, accounts, instruction, ctx)
        case RegisterConsumer():
            _process_register_consumer(program_id, accounts, instruction, ctx)
        case TopUp():
            _process_topup(program_id, accounts, instruction, ctx)
        case Consume():
            _process_consume(program_id, accounts, instruction, ctx)
        case _:
            assert_never(instruction)


# ── Transitions ──────────────────────────────────────────────────────


def _process_initialize_gateway(
    program_id: Pubkey,
    accounts: List[AccountInfo],
    ix: InitializeGateway,
    ctx: InvokeContext,
) -> None:
    it = iter(accounts)
    admin = _next_account(it)
    gateway_account = _next_account(it)
    treasury = _next_account(it)
    backend_signer = _next_account(it)
    system_program = _next_account(it)

    _require_signer(admin)
    _require_writable(gateway_account)
    _require_system_program(system_program)

    if ix.max_surge_bps > MAX_SURGE_BPS:
        raise GatewayException(GatewayError.INVALID_INSTRUCTION)

    expected_gateway, bump = gateway_pda(admin.key, program_id)
    if expected_gateway != gateway_account.key:
        raise GatewayException(GatewayError.INVALID_ACCOUNT)

    _create_pda_account(
        ctx,
        admin,
        gateway_account,
        program_id,
        [*gateway_seeds(admin.key), bytes([bump])],
        GatewayConfig.LEN,
    )

    if _read_gateway(gateway_account).is_initialized:
        raise GatewayException(GatewayError.ALREADY_INITIALIZED)

    cfg = GatewayConfig(
        is_initialized=True,
        admin=admin.key,
        treasury=treasury.key,
        backend_signer=backend_signer.key,
        base_price_lamports=ix.base_price_lamports,
        max_surge_bps=ix.max_surge_bps,
        period_limit=ix.period_limit,
        period_seconds=ix.period_seconds,
        bucket_capacity=ix.bucket_capacity,
        refill_per_second=ix.refill_per_second,
        bump=bump,
    )
    gateway_account.data[:] = cfg.pack()
    ctx.log("gateway initialized")


def _process_register_consumer(
    program_id: Pubkey,
    accounts: List[AccountInfo],
    ix: RegisterConsumer,
    ctx: InvokeContext,
) -> None:
    it = iter(accounts)
    owner = _next_account(it)
    gateway_account = _next_account(it)
    consumer_account = _next_account(it)
    system_program = _next_account(it)

    _require_signer(owner)
    _require_writable(consumer_account)
    _require_system_program(system_program)

    gateway = _load_gateway(program_id, gateway_account)

    expected_consumer, bump = consumer_pda(gateway_account.key, owner.key, ix.api_key_id, program_id)
    if expected_consumer != consumer_account.key:
        raise GatewayException(GatewayError.INVALID_ACCOUNT)

    _create_pda_account(
        ctx,
        owner,
        consumer_account,
        program_id,
        [*consumer_seeds(gateway_account.key, owner.key, ix.api_key_id), bytes([bump])],
        ConsumerAccount.LEN,
    )

    if _read_consumer(consumer_account).is_initialized:
        raise GatewayException(GatewayError.ALREADY_INITIALIZED)

    now_ts = ctx.clock.unix_timestamp
    consumer = ConsumerAccount(
        is_initialized=True,
        gateway=gateway_account.key,
        owner=owner.key,
        api_key_id=ix.api_key_id,
        api_key_hash=ix.api_key_hash,
        bucket_tokens=gateway.bucket_capacity,
        bucket_last_refill_ts=now_ts,
        quota_remaining=gateway.period_limit,
        quota_period_start_ts=now_ts,
        total_calls=0,
        total_spent_lamports=0,
        bump=bump,
    )
    consumer_account.data[:] = consumer.pack()
    ctx.log("consumer registered")


def _process_topup(
    program_id: Pubkey,
    accounts: List[AccountInfo],
    ix: TopUp,
    ctx: InvokeContext,
) -> None:
    it = iter(accounts)
    owner = _next_account(it)
    consumer_account = _next_account(it)
    system_program = _next_account(it)

    _require_signer(owner)
    _require_writable(consumer_account)
    _require_system_program(system_program)

    consumer = _load_consumer(program_id, consumer_account)
    if consumer.owner != owner.key:
        raise GatewayException(GatewayError.UNAUTHORIZED)

    ctx.transfer(owner, consumer_account, ix.lamports)
    ctx.log(f"consumer topped up {ix.lamports}")


def _process_consume(
    program_id: Pubkey,
    accounts: List[AccountInfo],
    ix: Consume,
    ctx: InvokeContext,
) -> None:
    it = iter(accounts)
    backend = _next_account(it)
    gateway_account = _next_account(it)
    consumer_account = _next_account(it)
    treasury_account = _next_account(it)

    _require_signer(backend)
    _require_writable(consumer_account)
    _require_writable(treasury_account)

    gateway = _load_gateway(program_id, gateway_account)
    if gateway.backend_signer != backend.key:
        raise GatewayException(GatewayError.UNAUTHORIZED)
    if gateway.treasury != treasury_account.key:
        raise GatewayException(GatewayError.INVALID_ACCOUNT)

    consumer = _load_consumer(program_id, consumer_account)
    if consumer.gateway != gateway_account.key:
        raise GatewayException(GatewayError.INVALID_ACCOUNT)
    if not _api_key_matches(consumer, ix.api_key_id, ix.presented_api_key_hash):
        raise GatewayException(GatewayError.API_KEY_MISMATCH)

    outcome = apply_consume(
        gateway.rules(),
        consumer.runtime_state(),
        ctx.clock.unix_timestamp,
        consumer_account.lamports,
        ctx.rent.minimum_balance(ConsumerAccount.LEN),
    )
    if not outcome.ok:
        raise map_consume_error(outcome.error)

    charge = outcome.charge
    if consumer_account.lamports < charge:
        raise GatewayException(GatewayError.INSUFFICIENT_BALANCE)
    if treasury_account.lamports + charge > U64_MAX:
        raise ArithmeticOverflow(f"{treasury_account.key} balance would overflow")

    consumer_account.lamports -= charge
    treasury_account.lamports += charge

    consumer.apply_runtime_state(outcome.state)
    consumer_account.data[:] = consumer.pack()
    ctx.log(f"consume charged {charge}")


# ── Helpers ──────────────────────────────────────────────────────────


def _next_account(it: Iterator[AccountInfo]) -> AccountInfo:
    try:
        return next(it)
    except StopIteration:
        raise NotEnoughAccountKeys() from None


def _require_signer(account: AccountInfo) -> None:
    if not account.is_signer:
        raise GatewayException(GatewayError.UNAUTHORIZED)


def _require_writable(account: AccountInfo) -> None:
    if not account.is_writable:
        raise GatewayException(GatewayError.INVALID_ACCOUNT)


def _require_system_program(account: AccountInfo) -> None:
    if account.key != SYSTEM_PROGRAM_ID:
        raise GatewayException(GatewayError.INVALID_ACCOUNT)


def _api_key_matches(consumer: ConsumerAccount, api_key_id: int, presented_hash: bytes) -> bool:
    # id and hash go through one constant-time comparison
    stored = consumer.api_key_id.to_bytes(8, "little") + consumer.api_key_hash
    presented = api_key_id.to_bytes(8, "little") + presented_hash
    return hmac.compare_digest(stored, presented)


def _create_pda_account(
    ctx: InvokeContext,
    payer: AccountInfo,
    pda: AccountInfo,
    program_id: Pubkey,
    signer_seeds: List[bytes],
    data_len: int,
) -> None:
    """Create a rent-exempt record at ``pda`` unless one already exists."""
    if pda.owner == program_id and pda.data_len() == data_len:
        return

    if pda.owner != SYSTEM_PROGRAM_ID:
        raise GatewayException(GatewayError.INVALID_ACCOUNT)

    ctx.create_account(
        payer,
        pda,
        ctx.rent.minimum_balance(data_len),
        data_len,
        program_id,
        signer_seeds,
    )


def _read_gateway(account: AccountInfo) -> GatewayConfig:
    try:
        return GatewayConfig.unpack(account.data)
    except LayoutError as e:
        raise GatewayException(GatewayError.INVALID_ACCOUNT) from e


def _read_consumer(account: AccountInfo) -> ConsumerAccount:
    try:
        return ConsumerAccount.unpack(account.data)
    except LayoutError as e:
        raise GatewayException(GatewayError.INVALID_ACCOUNT) from e


def _load_gateway(program_id: Pubkey, account: AccountInfo) -> GatewayConfig:
    """Read an initialized gateway owned by this program at its derived address."""
    if account.owner != program_id:
        raise GatewayException(GatewayError.INVALID_ACCOUNT)
    gateway = _read_gateway(account)
    if not gateway.is_initialized:
        raise GatewayException(GatewayError.INVALID_ACCOUNT)
    if not gateway_address_matches(gateway, account.key, program_id):
        raise GatewayException(GatewayError.INVALID_ACCOUNT)
    return gateway


def _load_consumer(program_id: Pubkey, account: AccountInfo) -> ConsumerAccount:
    """Read an initialized consumer owned by this program at its derived address."""
    if account.owner != program_id:
        raise GatewayException(GatewayError.INVALID_ACCOUNT)
    consumer = _read_consumer(account)
    if not consumer.is_initialized:
        raise GatewayException(GatewayError.INVALID_ACCOUNT)
    if not consumer_address_matches(consumer, account.key, program_id):
        raise GatewayException(GatewayError.INVALID_ACCOUNT)
    return consumer
