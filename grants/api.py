from typing import Annotated, Optional, Union
from uuid import UUID

from fastapi import Body, FastAPI, File, HTTPException, UploadFile, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse

from .config import get_settings
from .documents import DocumentStore, LocalDocumentStore
from .exceptions import (
    ClaimValidationError,
    ConcurrencyConflictError,
    GrantLedgerError,
    PersistenceFailureError,
    SubmissionNotFoundError,
    UserAlreadyExistsError,
    UserNotFoundError,
)
from .logging_config import configure_logging
from .models import (
    BalanceSnapshot,
    GrantBalances,
    GrantCategory,
    GrantRecord,
    JournalClaim,
    ReceiptAttachment,
    RegisterUserRequest,
    ResearchClaim,
    SubmissionHistoryResponse,
    SubmissionRecord,
    SubmissionResponse,
)
from .service import SubmissionService, build_submission_service

_STATUS_BY_ERROR = (
    (UserNotFoundError, status.HTTP_404_NOT_FOUND),
    (SubmissionNotFoundError, status.HTTP_404_NOT_FOUND),
    (UserAlreadyExistsError, status.HTTP_409_CONFLICT),
    (ConcurrencyConflictError, status.HTTP_409_CONFLICT),
    (PersistenceFailureError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (ClaimValidationError, status.HTTP_400_BAD_REQUEST),
)


def _http_error(e: GrantLedgerError) -> HTTPException:
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(e, error_type):
            status_code = code
            break
    return HTTPException(status_code=status_code, detail={"code": e.code, "message": str(e)})


def create_app(
    service: Optional[SubmissionService] = None,
    document_store: Optional[DocumentStore] = None,
    root_path: str = "",
) -> FastAPI:
    settings = get_settings()
    configure_logging()

    service = service or build_submission_service(settings, documents=document_store)
    document_store = document_store or service.documents or LocalDocumentStore(
        settings.receipt_dir, max_bytes=settings.max_receipt_bytes
    )

    app = FastAPI(
        title="Grant Reimbursement Ledger API",
        description="Research and journal grant claims with annual balance accounting",
        version="1.0.0",
        root_path=root_path,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.submission_service = service
    app.state.document_store = document_store

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "grant-ledger"}

    @app.post("/users", response_model=GrantRecord, status_code=status.HTTP_201_CREATED, tags=["Users"])
    def register_user(request: RegisterUserRequest) -> GrantRecord:
        try:
            return service.accounting.register_user(request)
        except GrantLedgerError as e:
            raise _http_error(e)

    @app.get("/users/by-email/{email}", response_model=GrantRecord, tags=["Users"])
    def get_user_by_email(email: str) -> GrantRecord:
        try:
            return service.accounting.get_user_by_email(email)
        except GrantLedgerError as e:
            raise _http_error(e)

    @app.get("/users/{user_id}", response_model=GrantRecord, tags=["Users"])
    def get_user(user_id: UUID) -> GrantRecord:
        try:
            service.accounting.refresh(user_id)
            return service.accounting.get_user(user_id)
        except GrantLedgerError as e:
            raise _http_error(e)

    @app.get("/users/{user_id}/balance", response_model=BalanceSnapshot, tags=["Balances"])
    def get_user_balance(user_id: UUID, category: GrantCategory = GrantCategory.RESEARCH) -> BalanceSnapshot:
        try:
            return service.get_current_balance(user_id, category)
        except GrantLedgerError as e:
            raise _http_error(e)

    @app.get("/users/{user_id}/balances", response_model=GrantBalances, tags=["Balances"])
    def get_user_balances(user_id: UUID) -> GrantBalances:
        try:
            return service.accounting.get_balances(user_id)
        except GrantLedgerError as e:
            raise _http_error(e)

    @app.get("/users/{user_id}/submissions", response_model=SubmissionHistoryResponse, tags=["Submissions"])
    def get_user_submissions(user_id: UUID, limit: int = 50, offset: int = 0) -> SubmissionHistoryResponse:
        try:
            return service.list_submissions(user_id, limit, offset)
        except GrantLedgerError as e:
            raise _http_error(e)

    @app.post(
        "/users/{user_id}/receipts",
        response_model=ReceiptAttachment,
        status_code=status.HTTP_201_CREATED,
        tags=["Receipts"],
    )
    def upload_receipt(user_id: UUID, file: UploadFile = File(...)) -> ReceiptAttachment:
        try:
            service.accounting.get_user(user_id)
            data = file.file.read()
            return document_store.store(user_id, file.filename or "receipt.pdf", file.content_type, data)
        except GrantLedgerError as e:
            raise _http_error(e)

    @app.get("/receipts/{ref}", tags=["Receipts"])
    def download_receipt(ref: str) -> FileResponse:
        if not isinstance(document_store, LocalDocumentStore):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Receipt not found")
        try:
            path = document_store.path_for(ref)
        except GrantLedgerError as e:
            raise _http_error(e)
        if not path.is_file():
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Receipt not found")
        return FileResponse(path, media_type="application/pdf", filename=ref)

    @app.post(
        "/submissions",
        response_model=SubmissionResponse,
        status_code=status.HTTP_201_CREATED,
        tags=["Submissions"],
    )
    def submit_claim(
        claim: Annotated[Union[ResearchClaim, JournalClaim], Body(discriminator="category")],
    ) -> SubmissionResponse:
        try:
            return service.submit(claim)
        except GrantLedgerError as e:
            raise _http_error(e)

    @app.get("/submissions/{submission_id}", response_model=SubmissionRecord, tags=["Submissions"])
    def get_submission(submission_id: UUID) -> SubmissionRecord:
        try:
            return service.get_submission(submission_id)
        except GrantLedgerError as e:
            raise _http_error(e)

    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
