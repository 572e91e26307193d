import logging
import os
import uuid
from contextlib import asynccontextmanager
from typing import Any, Literal

from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordRequestForm
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from .ai import vendor_oracle
from .auth import authenticate, create_access_token, get_current_user
from .confidence import USER_CONFIDENCE, ResolutionSource, classify
from .database import create_tables, get_db
from .errors import InternalError, InvalidId, ValidationError, VendorError
from .models import User, VendorMapping
from .normalize import clean_mapped_name
from .query import MappingPatch, VendorMappingQueries
from .resolver import VendorResolver
from .schemas import (
    BulkResolveRequest,
    MappingCreateRequest,
    MappingOut,
    MappingUpdateRequest,
    ResolveRequest,
)

logging.basicConfig(
    level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s"
)
logger = logging.getLogger(__name__)

CORS_ORIGINS = os.getenv("CORS_ORIGINS", "http://localhost:5173").split(",")


@asynccontextmanager
async def lifespan(app: FastAPI):
    await create_tables()
    yield


app = FastAPI(lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _field_errors(errors: list[dict]) -> dict[str, str]:
    details = {}
    for err in errors:
        loc = [str(p) for p in err.get("loc", ()) if p != "body"]
        details[".".join(loc) or "body"] = err.get("msg", "Invalid value")
    return details


@app.exception_handler(VendorError)
async def vendor_error_handler(request: Request, exc: VendorError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    err = ValidationError("Invalid request data", details=_field_errors(exc.errors()))
    return JSONResponse(status_code=err.status_code, content=err.to_dict())


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    err = InternalError()
    return JSONResponse(status_code=err.status_code, content=err.to_dict())


def _ok(data: Any, meta: dict | None = None) -> dict:
    body = {"success": True, "data": data}
    if meta:
        body["meta"] = meta
    return body


def _mapping_row(mapping: VendorMapping) -> dict:
    return MappingOut.model_validate(mapping).model_dump(mode="json")


def _check_id(mapping_id: str) -> str:
    try:
        return str(uuid.UUID(mapping_id))
    except ValueError:
        raise InvalidId(mapping_id)


def get_resolver(db: AsyncSession = Depends(get_db)) -> VendorResolver:
    return VendorResolver(VendorMappingQueries(db), vendor_oracle)


@app.post("/auth/login")
async def login(
    form: OAuth2PasswordRequestForm = Depends(), db: AsyncSession = Depends(get_db)
):
    user = await authenticate(db, form.username, form.password)
    return {"access_token": create_access_token(user.id), "token_type": "bearer"}


@app.post("/vendors/resolve")
async def resolve_vendor(
    body: ResolveRequest,
    user: User = Depends(get_current_user),
    resolver: VendorResolver = Depends(get_resolver),
):
    context = body.context.model_dump(exclude_none=True) if body.context else None
    outcome = await resolver.resolve(body.original_text, user.id, context)
    result = outcome.result

    logger.info(
        "Vendor resolved: user_id=%s original_length=%d confidence=%.2f source=%s",
        user.id,
        len(body.original_text),
        result.confidence,
        result.source,
    )
    return _ok(
        result.model_dump(exclude_none=True),
        meta={
            "resolved_count": 1,
            "cache_hit_rate": 1.0 if outcome.cache_hit else 0.0,
            "confidence_level": classify(result.confidence).value,
        },
    )


@app.post("/vendors/bulk-resolve")
async def bulk_resolve_vendors(
    body: BulkResolveRequest,
    user: User = Depends(get_current_user),
    resolver: VendorResolver = Depends(get_resolver),
):
    bulk = await resolver.bulk_resolve(body.vendor_texts, user.id)
    stats = bulk.stats
    cache_hit_rate = stats.cached / max(1, stats.total)

    logger.info(
        "Bulk vendor resolution completed: user_id=%s total=%d resolved=%d failed=%d cache_hit_rate=%.2f",
        user.id,
        stats.total,
        stats.resolved,
        stats.failed,
        cache_hit_rate,
    )
    return _ok(
        bulk.model_dump(exclude_none=True),
        meta={
            "total_count": stats.total,
            "resolved_count": stats.resolved,
            "cache_hit_rate": cache_hit_rate,
        },
    )


@app.get("/vendors/mappings")
async def list_mappings(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    search: str | None = Query(
        None, description="Case-insensitive substring match on text or name"
    ),
    source: Literal["llm", "user", "google"] | None = Query(None),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    items, total = await VendorMappingQueries(db).paginate(
        user_id=user.id, search=search, source=source, page=page, limit=limit
    )
    return _ok(
        [_mapping_row(m) for m in items],
        meta={"total_count": total, "page": page, "limit": limit},
    )


@app.get("/vendors/mappings/stats")
async def mapping_stats(
    user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)
):
    stats = await VendorMappingQueries(db).stats(user.id)
    return _ok(
        {
            "total_mappings": stats.total_mappings,
            "user_mappings": stats.user_mappings,
            "global_mappings": stats.global_mappings,
            "high_confidence_mappings": stats.high_confidence_mappings,
            "cache_effectiveness": stats.cache_effectiveness,
            "by_source": stats.by_source,
        }
    )


@app.post("/vendors/mappings", status_code=201)
async def create_mapping(
    body: MappingCreateRequest,
    user: User = Depends(get_current_user),
    resolver: VendorResolver = Depends(get_resolver),
):
    # Manual mappings are user overrides regardless of the submitted source
    mapping = await resolver.create_user_mapping(
        body.original_text, body.mapped_name, user.id
    )
    logger.info("User vendor mapping created: user_id=%s id=%s", user.id, mapping.id)
    return _ok(_mapping_row(mapping))


@app.patch("/vendors/mappings/{mapping_id}")
async def update_mapping(
    mapping_id: str,
    request: Request,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    resolver: VendorResolver = Depends(get_resolver),
):
    mapping_id = _check_id(mapping_id)
    mq = VendorMappingQueries(db)
    existing = await mq.check_owner(mapping_id, user.id)

    # Ownership is settled before the payload is looked at.
    try:
        payload = await request.json()
    except ValueError:
        raise ValidationError("Invalid request data")
    try:
        body = MappingUpdateRequest.model_validate(payload)
    except PydanticValidationError as e:
        raise ValidationError("Invalid request data", details=_field_errors(e.errors()))

    patch = MappingPatch(**body.model_dump(exclude_none=True))
    if patch.mapped_name is not None:
        patch.mapped_name = clean_mapped_name(patch.mapped_name)
        if not patch.mapped_name:
            raise ValidationError("Mapped name must be 1-200 characters")
    effective_source = body.source or existing.source
    if body.mapped_name is not None or effective_source == ResolutionSource.USER:
        patch.source = ResolutionSource.USER.value
        patch.confidence = USER_CONFIDENCE

    mapping = await mq.update_mapping(mapping_id, patch, user.id)
    if mapping.source == ResolutionSource.USER:
        await resolver.promote_consensus(mapping.original_text)
    logger.info("Vendor mapping updated: user_id=%s id=%s", user.id, mapping_id)
    return _ok(_mapping_row(mapping))


@app.delete("/vendors/mappings/{mapping_id}")
async def delete_mapping(
    mapping_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    mapping_id = _check_id(mapping_id)
    await VendorMappingQueries(db).delete_mapping(mapping_id, user.id)
    logger.info("Vendor mapping deleted: user_id=%s id=%s", user.id, mapping_id)
    return _ok({"deleted": True})
