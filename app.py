# app.py: LMS activity sync service
# - webhook receiver, bulk imports, admin repair jobs
# - handlers stay thin; the pipeline lives in ingest/repair/assignments

import hmac
import json
import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

import assignments
import db
import ingest
import repair
import views
from errors import StoreUnavailableError
from schemas import ImportSource, Source

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(_: FastAPI):
    try:
        from env_validation import validate_environment
        validate_environment()

        db.init()
        yield
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise


app = FastAPI(title="LMS Activity Sync", version="1.0.0", lifespan=_lifespan)

_ADMIN_PREFIXES = ("/admin", "/imports", "/assignments", "/catalog")


def _normalize_path(path: str) -> str:
    if not path or path == "/":
        return "/"
    return path.rstrip("/")


def _extract_token(header_value: Optional[str]) -> Optional[str]:
    if not header_value:
        return None
    candidate = header_value.strip()
    if not candidate:
        return None
    if " " in candidate:
        prefix, token = candidate.split(" ", 1)
        if prefix.lower() in {"bearer", "token"}:
            candidate = token.strip()
        else:
            candidate = token.strip() or prefix.strip()
    return candidate or None


def _is_admin(request: Request, expected: str) -> bool:
    for supplied in (
        _extract_token(request.headers.get("authorization")),
        request.headers.get("x-admin-token"),
    ):
        if supplied and hmac.compare_digest(supplied, expected):
            return True
    return False


@app.middleware("http")
async def _enforce_admin_token(request: Request, call_next):
    expected = os.getenv("ADMIN_TOKEN")
    normalized_path = _normalize_path(request.url.path)
    if expected and normalized_path.startswith(_ADMIN_PREFIXES):
        if not _is_admin(request, expected):
            return Response(
                status_code=401,
                content=json.dumps({"detail": "missing or invalid admin token"}),
                media_type="application/json",
            )
    return await call_next(request)


@app.exception_handler(StoreUnavailableError)
async def _store_unavailable(_: Request, exc: StoreUnavailableError):
    logger.error("Request aborted, entity store unavailable: %s", exc)
    return JSONResponse(status_code=503, content={"detail": "entity store unavailable"})


# ---------- Request bodies ----------
class CsvImportBody(BaseModel):
    csv_text: str
    source: ImportSource = "csv_import"


class RowsImportBody(BaseModel):
    rows: List[Dict[str, Any]]
    source: ImportSource = "rest_backfill"


class RepairBody(BaseModel):
    email: Optional[str] = None
    source: Optional[Source] = None
    reason: str = ""
    execute: bool = False
    csv_text: Optional[str] = None


class AssignmentBody(BaseModel):
    teacher_email: str
    student_emails: List[str] = Field(min_length=1)
    catalog_id: int
    due_at: Optional[str] = None
    assigned_at: Optional[str] = None


class CatalogBody(BaseModel):
    title: str
    topic: str = ""
    level: str = ""
    content_type: str = "lesson"
    course_id: str = ""
    lesson_id: str = ""
    quiz_id: str = ""
    source_key: str = ""
    is_active: bool = True


# ---------- Routes ----------
@app.get("/health")
def health():
    return {"status": "ok", "events": db.count_events()}


@app.post("/webhooks/lms")
async def receive_webhook(request: Request):
    # Always 200 so the LMS does not keep redelivering payloads we cannot use.
    try:
        body = await request.json()
    except (ValueError, UnicodeDecodeError):
        logger.warning("Webhook body is not valid JSON")
        return {"status": "rejected", "reason": "invalid JSON body"}
    result = ingest.ingest_webhook(body)
    return result.model_dump(exclude={"event": {"raw_payload"}})


@app.post("/imports/csv")
def import_csv(body: CsvImportBody):
    if not body.csv_text.strip():
        raise HTTPException(status_code=400, detail="csv_text is empty")
    summary = ingest.import_csv_text(body.csv_text, source=body.source)
    return summary.model_dump()


@app.post("/imports/rows")
def import_rows(body: RowsImportBody):
    if body.source == "csv_import":
        summary = ingest.import_csv_rows(body.rows, source=body.source)
    else:
        summary = ingest.import_rest_rows(body.rows, source=body.source)
    return summary.model_dump()


@app.post("/admin/repairs/{job}")
def run_repair_job(job: str, body: Optional[RepairBody] = None):
    body = body or RepairBody()
    if job not in repair.JOB_NAMES:
        raise HTTPException(status_code=404, detail=f"unknown repair job: {job}")
    try:
        outcome = repair.run_job(
            job,
            email=body.email,
            source=body.source,
            reason=body.reason,
            execute=body.execute,
            csv_text=body.csv_text,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return outcome.model_dump()


@app.post("/catalog")
def create_catalog_item(body: CatalogBody):
    try:
        item = assignments.create_catalog_item(**body.model_dump())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return item.model_dump()


@app.post("/assignments")
def create_assignments(body: AssignmentBody):
    try:
        created = assignments.create_assignments(
            body.teacher_email,
            body.student_emails,
            body.catalog_id,
            due_at=body.due_at,
            assigned_at=body.assigned_at,
        )
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"status": "ok", "assigned": len(created), "assignments": [a.model_dump() for a in created]}


@app.get("/students/{email}/scores")
def student_scores(email: str):
    return {"student_email": email.strip().lower(), "history": views.student_score_history(email)}


@app.get("/teachers/{teacher_email}/assignments")
def teacher_assignments(teacher_email: str):
    return {"teacher_email": teacher_email.strip().lower(), "catalog": views.assignment_completion(teacher_email)}
