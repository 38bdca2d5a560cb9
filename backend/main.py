from fastapi import FastAPI, UploadFile, File, HTTPException, Request, Query
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from typing import Optional
from core.config import get_settings
from core.storage import get_session, get_session_hashes, get_session_meta
from core.utils import format_value
from engine.ingest import ParseError, ingest
from engine.summary import summarize_dataset
from server.api import router as pointcloud_router
import logging
import hashlib
import json
from datetime import datetime
from collections import OrderedDict

logger = logging.getLogger("uvicorn.error")
settings = get_settings()
app = FastAPI(title="Point Cloud Explorer", description="Turn tables into 3D point clouds")

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(settings.cors_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Mount the layout/analysis API router
app.include_router(pointcloud_router)


PREVIEW_CACHE_MAX = 512
_preview_cache: "OrderedDict[tuple, dict]" = OrderedDict()


def _preview_cache_get(key: tuple):
    cached = _preview_cache.get(key)
    if cached is not None:
        _preview_cache.move_to_end(key)
    return cached


def _preview_cache_set(key: tuple, value: dict) -> None:
    _preview_cache[key] = value
    _preview_cache.move_to_end(key)
    if len(_preview_cache) > PREVIEW_CACHE_MAX:
        _preview_cache.popitem(last=False)


def require_session_id(request: Request) -> str:
    sid = request.headers.get("X-Session-Id")
    if not sid:
        raise HTTPException(status_code=400, detail="Missing X-Session-Id header.")
    return sid


def _sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _log_response(ctx: str, payload) -> None:
    """Pretty-print JSON-able payloads; fall back to str()."""
    try:
        logger.info("%s response: %s", ctx, json.dumps(payload, indent=2, default=str))
    except (TypeError, ValueError):
        logger.info("%s response (non-serializable): %s", ctx, str(payload))


@app.post("/upload")
async def upload(
    request: Request,
    file: UploadFile = File(...),
    derive_jitter: Optional[bool] = Query(None),
    seed: Optional[int] = Query(None),
):
    sid = require_session_id(request)
    content = await file.read()

    file_size = len(content)
    if file_size > settings.max_upload_bytes:
        raise HTTPException(status_code=413, detail=f"File exceeds {settings.max_upload_bytes} bytes.")

    filename = file.filename or "table.csv"
    ext = (filename.rsplit(".", 1)[1].lower() if "." in filename else "").strip()

    # duplicate detection (by content hash)
    file_hash = _sha256_bytes(content)
    sess_hashes = get_session_hashes(sid)
    if file_hash in sess_hashes:
        existing_name = sess_hashes[file_hash]
        dup_resp = {
            "ok": False,
            "duplicate": True,
            "dataset": existing_name,
            "detail": "Duplicate upload: this file was already uploaded for this session.",
        }
        _log_response("UPLOAD (duplicate)", dup_resp)
        return JSONResponse(status_code=409, content=dup_resp)

    try:
        text = content.decode("utf-8-sig")
    except UnicodeDecodeError as e:
        raise HTTPException(status_code=400, detail=f"File is not UTF-8 text: {e}")

    # --- session + unique name ---
    sess = get_session(sid)
    meta_store = get_session_meta(sid)

    base = filename.rsplit(".", 1)[0] if filename else "dataset"
    name = base
    i = 1
    while name in sess:
        i += 1
        name = f"{base}_{i}"

    try:
        dataset = ingest(
            text,
            ext,
            name=name,
            derive_jitter=settings.derive_jitter if derive_jitter is None else derive_jitter,
            seed=settings.seed if seed is None else seed,
        )
    except ParseError as e:
        logger.warning("Failed to ingest %s: %s", filename, e)
        raise HTTPException(status_code=400, detail=f"Failed to process file: {e}")

    # store dataset and remember hash -> name
    sess[name] = dataset
    sess_hashes[file_hash] = name
    if _preview_cache:
        keys_to_drop = [k for k in _preview_cache.keys() if k[0] == sid and k[1] == name]
        for k in keys_to_drop:
            _preview_cache.pop(k, None)

    # --- metadata ---
    meta_store[name] = {
        "file_name": filename,
        "file_ext": ext,
        "file_size": file_size,
        "created_at": datetime.utcnow().isoformat() + "Z",
    }

    resp = {
        "ok": True,
        "dataset": name,
        "rows": dataset.row_count,
        "columns": dataset.columns,
        "meta": meta_store[name],
        "summary": summarize_dataset(dataset).model_dump(),
    }
    _log_response("UPLOAD", {k: v for k, v in resp.items() if k != "summary"})
    return resp


@app.get("/datasets")
async def datasets(request: Request):
    sid = require_session_id(request)
    sess = get_session(sid)
    meta_store = get_session_meta(sid)

    info = []
    for name, dataset in sess.items():
        summary = summarize_dataset(dataset)
        info.append(
            {
                "name": name,
                **meta_store.get(name, {}),
                "n_rows": summary.row_count,
                "n_cols": len(summary.columns),
                "numeric_columns": summary.numeric_columns,
                "categorical_columns": summary.categorical_columns,
            }
        )

    resp = {"datasets": info}
    _log_response("DATASETS", resp)
    return resp


@app.get("/datasets/{name}/preview")
async def dataset_preview(request: Request, name: str, offset: int = 0, limit: int = 50):
    """Get a preview of the records with cursor pagination."""
    sid = require_session_id(request)
    sess = get_session(sid)

    if name not in sess:
        raise HTTPException(status_code=404, detail=f"Dataset '{name}' not found")

    offset = max(0, offset)
    limit = max(1, min(limit, 100))

    cache_key = (sid, name, offset, limit)
    cached = _preview_cache_get(cache_key)
    if cached is not None:
        return cached

    dataset = sess[name]
    total_rows = dataset.row_count
    end = min(offset + limit, total_rows)
    rows = [
        {col: format_value(v) if v is not None else None for col, v in record.items()}
        for record in dataset.records[offset:end]
    ]

    has_more = end < total_rows
    resp = {
        "dataset": name,
        "columns": dataset.columns,
        "rows": rows,
        "total_rows": total_rows,
        "offset": offset,
        "limit": limit,
        "returned_rows": len(rows),
        "has_more": has_more,
        "next_offset": end if has_more else None,
    }

    _preview_cache_set(cache_key, resp)
    return resp
