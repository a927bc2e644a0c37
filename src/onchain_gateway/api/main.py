# Gateway Node: FastAPI front end for the local ledger
#
# Exposes the ledger host over HTTP so that clients and the CLI can submit
# signed transactions and read account state:
#
#   GET  /health                    node status and program id
#   POST /transactions              submit a signed transaction
#   GET  /transactions/{signature}  receipt lookup
#   GET  /accounts/{address}        owner, lamports, base64 data
#   POST /airdrop                   faucet (403 when disabled)
#   GET  /rent/{data_len}           rent-exempt minimum balance
#
# Rejected transactions answer 400 with the full receipt as the body, so a
# client always learns the error code and program logs.

import logging
from typing import Dict, List, Optional

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Path, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .. import __version__
from ..config import GatewaySettings
from ..core import EventSeverity, EventType, configure_audit_logger, get_audit_logger
from ..ledger import AccountStore, Ledger, Pubkey, Transaction
from ..program import register_gateway_program

logger = logging.getLogger(__name__)


# ── Pydantic Models ──────────────────────────────────────────────────


class AccountMetaModel(BaseModel):
    pubkey: str
    is_signer: bool = False
    is_writable: bool = False


class InstructionModel(BaseModel):
    program_id: str
    accounts: List[AccountMetaModel]
    data: str  # base64


class TransactionRequest(BaseModel):
    instructions: List[InstructionModel] = Field(min_length=1)
    nonce: str
    signatures: Dict[str, str] = Field(default_factory=dict)  # pubkey -> base58 signature


class AirdropRequest(BaseModel):
    address: str
    lamports: int = Field(gt=0)


class HealthResponse(BaseModel):
    status: str
    version: str
    program_id: str
    faucet_enabled: bool


class RentResponse(BaseModel):
    data_len: int
    lamports: int


# ── Node state ───────────────────────────────────────────────────────


class NodeState:
    """What the routes need: the ledger plus node-level switches."""

    def __init__(self, ledger: Ledger, program_id: Pubkey, faucet_enabled: bool = True):
        self.ledger = ledger
        self.program_id = program_id
        self.faucet_enabled = faucet_enabled


def get_node(request: Request) -> NodeState:
    return request.app.state.node


def _parse_address(text: str) -> Pubkey:
    try:
        return Pubkey.from_string(text)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid address: {text}")


# ── Routes ───────────────────────────────────────────────────────────

router = APIRouter(tags=["ledger"])


@router.get("/health", response_model=HealthResponse)
def health(node: NodeState = Depends(get_node)):
    return HealthResponse(
        status="ok",
        version=__version__,
        program_id=str(node.program_id),
        faucet_enabled=node.faucet_enabled,
    )


@router.post("/transactions")
def submit_transaction(body: TransactionRequest, node: NodeState = Depends(get_node)):
    """Process one signed transaction and return its receipt."""
    try:
        tx = Transaction.from_dict(body.model_dump())
    except (KeyError, TypeError, ValueError) as e:
        raise HTTPException(status_code=422, detail=f"Malformed transaction: {e}")

    receipt = node.ledger.process_transaction(tx)
    if not receipt.ok:
        return JSONResponse(status_code=400, content=receipt.to_dict())
    return receipt.to_dict()


@router.get("/transactions/{signature}")
def get_transaction(signature: str, node: NodeState = Depends(get_node)):
    receipt = node.ledger.get_receipt(signature)
    if receipt is None:
        raise HTTPException(status_code=404, detail="Transaction not found")
    return receipt.to_dict()


@router.get("/accounts/{address}")
def get_account(address: str, node: NodeState = Depends(get_node)):
    pubkey = _parse_address(address)
    account = node.ledger.get_account(pubkey)
    if account is None:
        raise HTTPException(status_code=404, detail="Account not found")
    return account.to_dict(pubkey)


@router.post("/airdrop")
def airdrop(body: AirdropRequest, node: NodeState = Depends(get_node)):
    if not node.faucet_enabled:
        raise HTTPException(status_code=403, detail="Faucet disabled")
    pubkey = _parse_address(body.address)
    receipt = node.ledger.airdrop(pubkey, body.lamports)
    if not receipt.ok:
        return JSONResponse(status_code=400, content=receipt.to_dict())
    return receipt.to_dict()


@router.get("/rent/{data_len}", response_model=RentResponse)
def minimum_balance(data_len: int = Path(ge=0), node: NodeState = Depends(get_node)):
    return RentResponse(data_len=data_len, lamports=node.ledger.rent.minimum_balance(data_len))


# ── App factory ──────────────────────────────────────────────────────


def create_app(
    ledger: Ledger,
    program_id: Pubkey,
    faucet_enabled: bool = True,
) -> FastAPI:
    """Build the node application around an existing ledger."""
    app = FastAPI(
        title="Onchain Gateway Node",
        description="Local ledger running the API-billing gateway program",
        version=__version__,
    )
    app.state.node = NodeState(ledger, program_id, faucet_enabled)
    app.include_router(router)
    return app


def build_ledger(settings: GatewaySettings) -> Ledger:
    """Open the configured store and install the gateway program."""
    ledger = Ledger(store=AccountStore(settings.db_path))
    register_gateway_program(ledger, settings.program_id)
    return ledger


def start_api_server(settings: Optional[GatewaySettings] = None):
    """
    Start the node.

    Args:
        settings: Node settings (default: read from the environment)
    """
    settings = settings or GatewaySettings.from_env()
    configure_audit_logger(settings.audit_dir)
    ledger = build_ledger(settings)
    app = create_app(ledger, settings.program_id, settings.faucet_enabled)

    get_audit_logger().log_event(
        event_type=EventType.NODE_START,
        severity=EventSeverity.INFO,
        message="Gateway node starting",
        details={
            "host": settings.host,
            "port": settings.port,
            "program_id": str(settings.program_id),
            "db_path": str(settings.db_path),
            "faucet_enabled": settings.faucet_enabled,
        },
    )
    logger.info("Serving program %s on %s:%d", settings.program_id, settings.host, settings.port)
    try:
        uvicorn.run(app, host=settings.host, port=settings.port, log_level="info")
    finally:
        ledger.store.close()
