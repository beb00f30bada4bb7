import asyncio
from contextlib import asynccontextmanager
from typing import Optional
from uuid import UUID

import structlog
from fastapi import BackgroundTasks, Depends, FastAPI, File, Form, Header, HTTPException, Query, Request, UploadFile, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from mangum import Mangum
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from accounting.models import (
    AddCreditsRequest, AddCreditsResult, RefundRequest, RefundResult,
    AdjustRequest, AdjustResult, BalanceCache, LedgerHistoryResponse, ReconcileResult,
)
from accounting.service import LedgerService, LedgerServiceError, InsufficientBalance, LedgerConflict
from anchoring.fingerprint import InvalidFingerprint
from anchoring.models import (
    SubmitRegistrationRequest, RegistrationStatus, RegistrationStatusResponse,
    VerificationResponse, VerificationStatus, DuplicateCheckResponse,
)
from anchoring.network import AnchoringNetwork, build_network
from anchoring.service import (
    RegistrationService, RegistrationNotFound, RetryNotAllowed, RegistrationConflict, SweepResult,
)
from anchoring.verifier import ProofVerifier
from common.config import Settings, get_settings
from common.log import setup_logging

logger = structlog.get_logger().bind(system="api")

MAX_PROOF_BYTES = 1024 * 1024


def require_principal(x_principal_id: Optional[str] = Header(default=None)) -> str:
    if not x_principal_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-Principal-Id header")
    return x_principal_id


def require_operator(request: Request, principal: str = Depends(require_principal)) -> str:
    if principal not in request.app.state.settings.operator_principals:
        logger.warning("operator_access_denied", principal=principal, path=request.url.path)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Operator access required")
    return principal


async def sweep_forever(registrations: RegistrationService, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            await registrations.sweep()
        except Exception:
            logger.exception("sweep_failed")


def create_app(
    settings: Optional[Settings] = None,
    ledger: Optional[LedgerService] = None,
    network: Optional[AnchoringNetwork] = None,
    registrations: Optional[RegistrationService] = None,
) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(settings)

    ledger = ledger or LedgerService(max_retries=settings.ledger_max_retries)
    if registrations is None:
        registrations = RegistrationService(ledger, network or build_network(settings), settings=settings)
    verifier = ProofVerifier(registrations.registry, legal_notice=settings.legal_notice)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        sweeper = None
        if settings.sweep_interval_seconds > 0:
            sweeper = asyncio.create_task(sweep_forever(registrations, settings.sweep_interval_seconds))
        yield
        if sweeper is not None:
            sweeper.cancel()
            await asyncio.gather(sweeper, return_exceptions=True)
        close = getattr(registrations.network, "aclose", None)
        if close is not None:
            await close()

    app = FastAPI(
        title="Proofstamp API",
        description="Content registration with anchored, independently verifiable timestamps",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.settings = settings
    app.state.ledger = ledger
    app.state.registrations = registrations
    app.state.verifier = verifier

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "proofstamp"}

    # Registrations

    @app.post(
        "/registrations",
        response_model=RegistrationStatusResponse,
        status_code=status.HTTP_201_CREATED,
        tags=["Registrations"],
    )
    def submit_registration(
        request: SubmitRegistrationRequest,
        background_tasks: BackgroundTasks,
        principal: str = Depends(require_principal),
    ) -> RegistrationStatusResponse:
        try:
            registration = registrations.submit(principal, request.fingerprint, request.registration_id)
        except InsufficientBalance as e:
            raise HTTPException(status_code=status.HTTP_402_PAYMENT_REQUIRED, detail=str(e))
        except (RegistrationConflict, LedgerConflict) as e:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

        if registration.status == RegistrationStatus.PENDING:
            background_tasks.add_task(registrations.process, registration.id)
        return registrations.status_view(registration.id, principal)

    @app.get("/registrations/duplicate-check", response_model=DuplicateCheckResponse, tags=["Registrations"])
    def duplicate_check(
        fingerprint: str = Query(...),
        principal: str = Depends(require_principal),
    ) -> DuplicateCheckResponse:
        try:
            return registrations.check_duplicate(principal, fingerprint)
        except InvalidFingerprint as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    @app.post(
        "/registrations/{registration_id}/process",
        response_model=RegistrationStatusResponse,
        status_code=status.HTTP_202_ACCEPTED,
        tags=["Registrations"],
    )
    def process_registration(
        registration_id: UUID,
        background_tasks: BackgroundTasks,
        principal: str = Depends(require_principal),
    ) -> RegistrationStatusResponse:
        try:
            view = registrations.status_view(registration_id, principal)
        except RegistrationNotFound:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Registration {registration_id} not found")

        if view.status == RegistrationStatus.PENDING:
            background_tasks.add_task(registrations.process, registration_id)
        return view

    @app.post("/registrations/{registration_id}/refresh", response_model=RegistrationStatusResponse, tags=["Registrations"])
    async def refresh_registration(
        registration_id: UUID,
        principal: str = Depends(require_principal),
    ) -> RegistrationStatusResponse:
        try:
            registrations.get(registration_id, principal)
            await registrations.refresh(registration_id)
            return registrations.status_view(registration_id, principal)
        except RegistrationNotFound:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Registration {registration_id} not found")

    @app.post(
        "/registrations/{registration_id}/retry",
        response_model=RegistrationStatusResponse,
        status_code=status.HTTP_201_CREATED,
        tags=["Registrations"],
    )
    def retry_registration(
        registration_id: UUID,
        background_tasks: BackgroundTasks,
        principal: str = Depends(require_principal),
    ) -> RegistrationStatusResponse:
        try:
            registration = registrations.retry(registration_id, principal)
        except RegistrationNotFound:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Registration {registration_id} not found")
        except RetryNotAllowed as e:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

        if registration.status == RegistrationStatus.PENDING:
            background_tasks.add_task(registrations.process, registration.id)
        return registrations.status_view(registration.id, principal)

    @app.get("/registration-status", response_model=RegistrationStatusResponse, tags=["Registrations"])
    def registration_status(
        registration_id: UUID = Query(..., alias="id"),
        principal: str = Depends(require_principal),
    ) -> RegistrationStatusResponse:
        try:
            return registrations.status_view(registration_id, principal)
        except RegistrationNotFound:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Registration {registration_id} not found")

    # Verification (public)

    def verification_response(result: VerificationResponse):
        if result.status == VerificationStatus.INVALID_FORMAT:
            return JSONResponse(
                status_code=status.HTTP_400_BAD_REQUEST,
                content=result.model_dump(mode="json", by_alias=True),
            )
        return result

    @app.get("/verify", response_model=VerificationResponse, tags=["Verification"])
    def verify_fingerprint(fingerprint: str = ""):
        return verification_response(verifier.verify_fingerprint(fingerprint))

    @app.post("/verify", response_model=VerificationResponse, tags=["Verification"])
    async def verify_proof_file(
        fingerprint: str = Form(...),
        proof_file: UploadFile = File(..., alias="proofFile"),
    ):
        proof = await proof_file.read(MAX_PROOF_BYTES + 1)
        if len(proof) > MAX_PROOF_BYTES:
            raise HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail="Proof file too large")
        return verification_response(verifier.verify_proof(fingerprint, proof))

    # Accounts

    @app.get("/accounts/me/balance", response_model=BalanceCache, tags=["Accounts"])
    def get_my_balance(principal: str = Depends(require_principal)) -> BalanceCache:
        return ledger.get_balance(principal)

    @app.get("/accounts/me/ledger", response_model=LedgerHistoryResponse, tags=["Accounts"])
    def get_my_ledger(
        limit: int = Query(50, ge=1, le=500),
        offset: int = Query(0, ge=0),
        principal: str = Depends(require_principal),
    ) -> LedgerHistoryResponse:
        return ledger.get_ledger_history(principal, limit, offset)

    @app.post("/accounts/me/reconcile", response_model=ReconcileResult, tags=["Accounts"])
    def reconcile_my_balance(principal: str = Depends(require_principal)) -> ReconcileResult:
        return ledger.reconcile(principal)

    @app.post(
        "/accounts/{account_id}/credits",
        response_model=AddCreditsResult,
        status_code=status.HTTP_201_CREATED,
        tags=["Accounts"],
    )
    def add_credits(
        account_id: str,
        request: AddCreditsRequest,
        principal: str = Depends(require_operator),
    ) -> AddCreditsResult:
        try:
            return ledger.add_credits(account_id, request, created_by=principal)
        except LedgerConflict as e:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
        except LedgerServiceError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    @app.post("/accounts/{account_id}/refunds", response_model=RefundResult, tags=["Accounts"])
    def refund_credit(
        account_id: str,
        request: RefundRequest,
        principal: str = Depends(require_operator),
    ) -> RefundResult:
        try:
            return ledger.refund_credit(account_id, request, performed_by=principal)
        except LedgerConflict as e:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
        except LedgerServiceError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    @app.post("/accounts/{account_id}/adjustments", response_model=AdjustResult, tags=["Accounts"])
    def adjust_balance(
        account_id: str,
        request: AdjustRequest,
        principal: str = Depends(require_operator),
    ) -> AdjustResult:
        try:
            return ledger.adjust_balance(account_id, request, performed_by=principal)
        except LedgerConflict as e:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
        except LedgerServiceError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    @app.post("/maintenance/sweep", response_model=SweepResult, tags=["System"])
    async def sweep_registrations(principal: str = Depends(require_operator)) -> SweepResult:
        return await registrations.sweep()

    return app


app = create_app()

handler = Mangum(app)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("api.index:app", host="0.0.0.0", port=8000)
