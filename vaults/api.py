"""HTTP relayer: submit signed permissions to the vault and inspect its state."""
from __future__ import annotations

import hmac
import logging
from typing import Any, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, model_validator

from .config import VaultSettings
from .errors import VaultError
from .permissions import Action, Permission, SignedPermission, normalize_address, parse_hex_bytes
from .vault import Vault, VaultReceipt

logger = logging.getLogger(__name__)

ADDRESS_PATTERN = r"^0x[a-fA-F0-9]{40}$"
HEX_PATTERN = r"^0x[a-fA-F0-9]*$"


class PermissionPayload(BaseModel):
    action: Action
    vault: str = Field(pattern=ADDRESS_PATTERN)
    authorizer: str = Field(pattern=ADDRESS_PATTERN)
    depositor: Optional[str] = Field(default=None, pattern=ADDRESS_PATTERN)
    token: str = Field(pattern=ADDRESS_PATTERN)
    nonce: int = Field(ge=0)
    chain_id: int = Field(gt=0)
    amount: Optional[int] = Field(default=None, gt=0)
    token_id: Optional[int] = Field(default=None, ge=0)


class FungibleSubmission(BaseModel):
    token: str = Field(pattern=ADDRESS_PATTERN)
    amount: int = Field(gt=0)
    permission: PermissionPayload
    signature: str = Field(pattern=HEX_PATTERN)


class ERC721Submission(BaseModel):
    token: str = Field(pattern=ADDRESS_PATTERN)
    token_id: int = Field(ge=0)
    permission: PermissionPayload
    signature: str = Field(pattern=HEX_PATTERN)


class DepositPayload(BaseModel):
    owner: str = Field(pattern=ADDRESS_PATTERN)
    token: str = Field(pattern=ADDRESS_PATTERN)
    amount: Optional[int] = Field(default=None, gt=0)
    token_id: Optional[int] = Field(default=None, ge=0)

    @model_validator(mode="after")
    def ensure_single_value(self) -> "DepositPayload":
        if (self.amount is None) == (self.token_id is None):
            raise ValueError("exactly one of amount or token_id is required")
        return self


class TransferRecord(BaseModel):
    token: str
    recipient: str
    amount: Optional[str] = None
    token_id: Optional[str] = None


class ReceiptRecord(BaseModel):
    tx_hash: str
    sequence: int
    action: str
    depositor: str
    authorizer: Optional[str]
    token: str
    amount: Optional[str]
    token_id: Optional[str]
    nonce: Optional[int]
    transfers: List[TransferRecord]


class NonceResponse(BaseModel):
    authorizer: str
    nonce: int


class HoldingsResponse(BaseModel):
    owner: str
    token: str
    locked_balance: str
    deposited_balance: str
    locked_token_ids: List[str]
    deposited_token_ids: List[str]
    delegate: Optional[str]


def _receipt_record(receipt: VaultReceipt) -> ReceiptRecord:
    return ReceiptRecord.model_validate(receipt.to_dict())


def _signed_permission(payload: PermissionPayload, signature: str) -> SignedPermission:
    try:
        permission = Permission.from_dict(payload.model_dump())
        signature_bytes = parse_hex_bytes(signature)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return SignedPermission(permission=permission, signature=signature_bytes)


def create_app(vault: Vault, settings: VaultSettings) -> FastAPI:
    app = FastAPI(title="Lockable Vault Relayer", version="1.0.0")

    async def require_admin(request: Request) -> None:
        token = settings.api_admin_token
        if not token:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Deposit feed disabled: no admin token configured",
            )
        provided = request.headers.get("X-Admin-Token") or ""
        if not hmac.compare_digest(provided, token):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Admin token required")

    @app.exception_handler(VaultError)
    async def vault_error_handler(_: Request, exc: VaultError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": str(exc), "error": exc.code},
        )

    @app.get("/api/vault")
    async def vault_info() -> dict[str, Any]:
        return {
            "vault": vault.address,
            "chain_id": vault.chain_id,
            "domain": {"name": vault.domain.name, "version": vault.domain.version},
            "sequence": vault.store.sequence,
        }

    @app.get("/api/nonces/{authorizer}", response_model=NonceResponse)
    async def get_nonce(authorizer: str) -> NonceResponse:
        try:
            normalized = normalize_address(authorizer)
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        return NonceResponse(authorizer=normalized, nonce=vault.get_nonce(normalized))

    @app.get("/api/holdings/{owner}/{token}", response_model=HoldingsResponse)
    async def get_holdings(owner: str, token: str) -> HoldingsResponse:
        try:
            holdings = vault.holdings(owner, token)
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        return HoldingsResponse(
            owner=holdings["owner"],
            token=holdings["token"],
            locked_balance=str(holdings["locked_balance"]),
            deposited_balance=str(holdings["deposited_balance"]),
            locked_token_ids=[str(token_id) for token_id in holdings["locked_token_ids"]],
            deposited_token_ids=[str(token_id) for token_id in holdings["deposited_token_ids"]],
            delegate=holdings["delegate"],
        )

    @app.post("/api/permissions/lock", response_model=ReceiptRecord)
    async def submit_lock(payload: FungibleSubmission) -> ReceiptRecord:
        signed = _signed_permission(payload.permission, payload.signature)
        return _receipt_record(vault.lock(payload.token, payload.amount, signed))

    @app.post("/api/permissions/unlock", response_model=ReceiptRecord)
    async def submit_unlock(payload: FungibleSubmission) -> ReceiptRecord:
        signed = _signed_permission(payload.permission, payload.signature)
        return _receipt_record(vault.unlock(payload.token, payload.amount, signed))

    @app.post("/api/permissions/lock-erc721", response_model=ReceiptRecord)
    async def submit_lock_erc721(payload: ERC721Submission) -> ReceiptRecord:
        signed = _signed_permission(payload.permission, payload.signature)
        return _receipt_record(vault.lock_erc721(payload.token, payload.token_id, signed))

    @app.post("/api/permissions/unlock-erc721", response_model=ReceiptRecord)
    async def submit_unlock_erc721(payload: ERC721Submission) -> ReceiptRecord:
        signed = _signed_permission(payload.permission, payload.signature)
        return _receipt_record(vault.unlock_erc721(payload.token, payload.token_id, signed))

    @app.post("/api/deposits", response_model=ReceiptRecord)
    async def record_deposit(payload: DepositPayload, _: Any = Depends(require_admin)) -> ReceiptRecord:
        try:
            if payload.amount is not None:
                receipt = vault.record_deposit(payload.owner, payload.token, payload.amount)
            else:
                receipt = vault.record_erc721_deposit(payload.owner, payload.token, payload.token_id)
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        logger.info("Deposit feed credited %s %s for %s", payload.token, receipt.amount or receipt.token_id, payload.owner)
        return _receipt_record(receipt)

    return app


def run_api(app: FastAPI, settings: VaultSettings) -> None:
    """Run the FastAPI app using uvicorn."""
    import uvicorn  # Imported lazily to avoid mandatory dependency in tests

    config = uvicorn.Config(
        app,
        host=settings.api_host,
        port=settings.api_port,
        log_level="info",
        root_path=settings.api_root_path,
    )
    server = uvicorn.Server(config)
    server.run()


__all__ = ["create_app", "run_api"]
