import logging
from pathlib import Path
from typing import Iterator, Optional

from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.responses import (
    HTMLResponse,
    JSONResponse,
    RedirectResponse,
    StreamingResponse,
)
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import get_settings
from csrf import generate_csrf_token, validate_csrf_token
from database import session_scope
from models import BucketPeriod, BucketStatus
from periods import local_now, resolve_period
from schemas import (
    BucketIn,
    BucketOut,
    BucketUpdate,
    DashboardBucketOut,
    StatementUploadOut,
    TransactionAssign,
    TransactionIn,
    TransactionOut,
)
from services import (
    BucketService,
    DashboardService,
    DuplicateError,
    NotFoundError,
    StatementService,
    TransactionFilters,
    TransactionService,
)

BASE_DIR = Path(__file__).resolve().parent

logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Bucket Budgets")
app.mount("/static", StaticFiles(directory=BASE_DIR / "static"), name="static")
templates = Jinja2Templates(directory=BASE_DIR / "templates")

STATUS_LABELS = {
    BucketStatus.good: "On track",
    BucketStatus.warning: "Watch",
    BucketStatus.critical: "Over pace",
}
HTTP_ERROR_CODES = {400: "BAD_REQUEST", 404: "NOT_FOUND", 405: "METHOD_NOT_ALLOWED"}


def format_amount(value: float) -> str:
    return f"{value:,.2f}"


def static_path(path: str) -> str:
    return app.url_path_for("static", path=path)


templates.env.filters["amount"] = format_amount
templates.env.globals["csrf_token"] = generate_csrf_token
templates.env.globals["static_path"] = static_path
templates.env.globals["status_labels"] = STATUS_LABELS
templates.env.globals["BucketPeriod"] = BucketPeriod


def get_db() -> Iterator[Session]:
    with session_scope() as session:
        yield session


def error_response(
    status_code: int,
    message: str,
    code: str,
    errors: Optional[dict[str, list[str]]] = None,
) -> JSONResponse:
    body: dict[str, object] = {"error": message, "code": code}
    if errors:
        body["errors"] = errors
    return JSONResponse(status_code=status_code, content=body)


def field_errors(raw_errors) -> dict[str, list[str]]:
    errors: dict[str, list[str]] = {}
    for err in raw_errors:
        loc = [str(part) for part in err.get("loc", ())]
        if loc and loc[0] in ("body", "query", "path", "form"):
            loc = loc[1:]
        errors.setdefault(".".join(loc) or "__root__", []).append(err["msg"])
    return errors


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError):
    return error_response(
        400, "Validation failed", "VALIDATION_ERROR", field_errors(exc.errors())
    )


@app.exception_handler(NotFoundError)
async def handle_not_found(request: Request, exc: NotFoundError):
    return error_response(404, str(exc), "NOT_FOUND")


@app.exception_handler(DuplicateError)
async def handle_duplicate(request: Request, exc: DuplicateError):
    return error_response(409, str(exc), "DUPLICATE_ERROR")


@app.exception_handler(IntegrityError)
async def handle_integrity_error(request: Request, exc: IntegrityError):
    return error_response(
        409, "A record with this unique field already exists", "DUPLICATE_ERROR"
    )


@app.exception_handler(StarletteHTTPException)
async def handle_http_error(request: Request, exc: StarletteHTTPException):
    code = HTTP_ERROR_CODES.get(exc.status_code, "HTTP_ERROR")
    return error_response(exc.status_code, str(exc.detail), code)


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception):
    logger.exception(f"unhandled_error: path={request.url.path}")
    return error_response(500, "An unexpected error occurred", "INTERNAL_ERROR")


def filters_from_request(request: Request) -> TransactionFilters:
    params = request.query_params
    try:
        period = resolve_period(
            params.get("period"),
            params.get("start"),
            params.get("end"),
            today=local_now().date(),
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    unassigned = params.get("unassigned", "").lower() in {"1", "true", "yes", "on"}
    return TransactionFilters(
        period=period,
        bucket_id=params.get("bucket_id") or None,
        unassigned=unassigned,
        query=params.get("q") or None,
    )


async def read_statement(file: Optional[UploadFile]) -> str:
    if file is None or not file.filename:
        raise ValueError("No file provided")
    limit = get_settings().max_upload_bytes
    raw = await file.read(limit + 1)
    if len(raw) > limit:
        raise ValueError("Statement file too large")
    try:
        return raw.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise ValueError("Statement must be UTF-8 encoded") from exc


def render(request: Request, template: str, context: dict[str, object]) -> HTMLResponse:
    return templates.TemplateResponse(request, template, context)


def require_csrf(token: Optional[str]) -> None:
    if not validate_csrf_token(token):
        raise HTTPException(status_code=400, detail="Invalid CSRF token")


# JSON API


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.get("/buckets", response_model=list[BucketOut])
def list_buckets(db: Session = Depends(get_db)):
    return BucketService(db).list_all()


@app.post("/buckets", response_model=BucketOut, status_code=201)
def create_bucket(data: BucketIn, db: Session = Depends(get_db)):
    return BucketService(db).create(data)


@app.get("/buckets/{bucket_id}", response_model=BucketOut)
def get_bucket(bucket_id: str, db: Session = Depends(get_db)):
    return BucketService(db).get(bucket_id)


@app.put("/buckets/{bucket_id}", response_model=BucketOut)
def update_bucket(bucket_id: str, data: BucketUpdate, db: Session = Depends(get_db)):
    return BucketService(db).update(bucket_id, data)


@app.delete("/buckets/{bucket_id}")
def delete_bucket(bucket_id: str, db: Session = Depends(get_db)):
    BucketService(db).delete(bucket_id)
    return {"success": True}


@app.get("/transactions", response_model=list[TransactionOut])
def list_transactions(request: Request, db: Session = Depends(get_db)):
    return TransactionService(db).list_all(filters_from_request(request))


@app.get("/transactions/export.csv")
def export_transactions_endpoint(request: Request, db: Session = Depends(get_db)):
    filters = filters_from_request(request)
    csv_text = TransactionService(db).export(filters)
    filename = f"transactions_{filters.period.slug}.csv"
    return StreamingResponse(
        iter([csv_text]),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.post("/transactions", response_model=TransactionOut, status_code=201)
def create_transaction(data: TransactionIn, db: Session = Depends(get_db)):
    return TransactionService(db).create(data)


@app.get("/transactions/{transaction_id}", response_model=TransactionOut)
def get_transaction(transaction_id: str, db: Session = Depends(get_db)):
    return TransactionService(db).get(transaction_id)


@app.put("/transactions/{transaction_id}", response_model=TransactionOut)
def assign_transaction(
    transaction_id: str, data: TransactionAssign, db: Session = Depends(get_db)
):
    return TransactionService(db).assign_bucket(transaction_id, data.bucket_id)


@app.delete("/transactions/{transaction_id}")
def delete_transaction(transaction_id: str, db: Session = Depends(get_db)):
    TransactionService(db).delete(transaction_id)
    return {"success": True}


@app.get("/dashboard", response_model=list[DashboardBucketOut])
def dashboard_data(db: Session = Depends(get_db)):
    return DashboardService(db).bucket_statuses()


@app.post("/upload-statement", response_model=StatementUploadOut)
async def upload_statement(
    file: Optional[UploadFile] = File(None), db: Session = Depends(get_db)
):
    try:
        content = await read_statement(file)
    except ValueError as exc:
        return error_response(400, str(exc), "BAD_REQUEST")
    result = StatementService(db).upload(content)
    payload = StatementUploadOut.model_validate(result, from_attributes=True)
    if not result.success:
        return JSONResponse(status_code=400, content=payload.model_dump(mode="json"))
    return payload


# HTML pages


@app.get("/", response_class=HTMLResponse)
def dashboard_page(request: Request, db: Session = Depends(get_db)):
    statuses = DashboardService(db).bucket_statuses()
    return render(request, "dashboard.html", {"buckets": statuses})


@app.get("/ui/buckets", response_class=HTMLResponse)
def buckets_page(request: Request, db: Session = Depends(get_db)):
    return render(request, "buckets.html", {"buckets": BucketService(db).list_all()})


@app.post("/ui/buckets")
def create_bucket_form(
    csrf_token: str = Form(...),
    name: str = Form(...),
    size: str = Form(...),
    period: str = Form(...),
    db: Session = Depends(get_db),
):
    require_csrf(csrf_token)
    try:
        data = BucketIn(name=name, size=size, period=period)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    BucketService(db).create(data)
    return RedirectResponse(url="/ui/buckets", status_code=303)


@app.post("/ui/buckets/{bucket_id}")
async def update_bucket_form(
    bucket_id: str, request: Request, db: Session = Depends(get_db)
):
    form = await request.form()
    require_csrf(form.get("csrf_token"))
    # Blank inputs mean "leave unchanged".
    supplied = {
        key: str(form[key]).strip()
        for key in ("name", "size", "period")
        if str(form.get(key) or "").strip()
    }
    try:
        data = BucketUpdate(**supplied)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    BucketService(db).update(bucket_id, data)
    return RedirectResponse(url="/ui/buckets", status_code=303)


@app.post("/ui/buckets/{bucket_id}/delete")
def delete_bucket_form(
    bucket_id: str, csrf_token: str = Form(...), db: Session = Depends(get_db)
):
    require_csrf(csrf_token)
    BucketService(db).delete(bucket_id)
    return RedirectResponse(url="/ui/buckets", status_code=303)


@app.get("/ui/transactions", response_class=HTMLResponse)
def transactions_page(request: Request, db: Session = Depends(get_db)):
    filters = filters_from_request(request)
    return render(
        request,
        "transactions.html",
        {
            "transactions": TransactionService(db).list_all(filters),
            "buckets": BucketService(db).list_all(),
            "filters": filters,
        },
    )


@app.post("/ui/transactions/{transaction_id}/assign")
def assign_transaction_form(
    transaction_id: str,
    csrf_token: str = Form(...),
    bucket_id: str = Form(""),
    next_url: str = Form("/ui/transactions"),
    db: Session = Depends(get_db),
):
    require_csrf(csrf_token)
    TransactionService(db).assign_bucket(transaction_id, bucket_id or None)
    if not next_url.startswith("/"):
        next_url = "/ui/transactions"
    return RedirectResponse(url=next_url, status_code=303)


@app.get("/ui/upload", response_class=HTMLResponse)
def upload_page(request: Request):
    return render(request, "upload.html", {})


@app.post("/ui/upload/preview", response_class=HTMLResponse)
async def upload_preview_form(
    request: Request,
    csrf_token: str = Form(...),
    file: Optional[UploadFile] = File(None),
    db: Session = Depends(get_db),
):
    require_csrf(csrf_token)
    try:
        content = await read_statement(file)
    except ValueError as exc:
        return render(
            request, "upload.html", {"errors": [str(exc)], "previewing": True}
        )
    rows, errors = StatementService(db).preview(content)
    return render(
        request,
        "upload.html",
        {"preview": rows, "errors": errors, "previewing": True},
    )


@app.post("/ui/upload", response_class=HTMLResponse)
async def upload_form(
    request: Request,
    csrf_token: str = Form(...),
    file: Optional[UploadFile] = File(None),
    db: Session = Depends(get_db),
):
    require_csrf(csrf_token)
    try:
        content = await read_statement(file)
    except ValueError as exc:
        return render(request, "upload.html", {"errors": [str(exc)]})
    result = StatementService(db).upload(content)
    return render(
        request, "upload.html", {"result": result, "errors": result.errors or []}
    )


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
