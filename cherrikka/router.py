"""Conversion API routes."""

import json

from fastapi import APIRouter, Depends, Form, HTTPException, Response, UploadFile

from cherrikka.backup.detection import BackupFormatError
from cherrikka.models import ConvertOptions
from cherrikka.schemas import InspectResult, ValidateResult
from cherrikka.service import ConversionService

router = APIRouter(prefix="/api", tags=["convert"])

DEFAULT_MAX_UPLOAD_BYTES = 200 * 1024 * 1024


def get_conversion_service() -> ConversionService:
    """Dependency placeholder, overridden at startup."""
    raise RuntimeError("ConversionService not configured")


def get_upload_limit() -> int:
    """Maximum accepted size of one uploaded archive, in bytes."""
    return DEFAULT_MAX_UPLOAD_BYTES


async def _read_upload(file: UploadFile, limit: int) -> bytes:
    content = await file.read()
    if len(content) > limit:
        raise HTTPException(
            status_code=413,
            detail=f"{file.filename or 'upload'} exceeds {limit // (1024 * 1024)} MB",
        )
    return content


@router.post("/inspect")
async def inspect_archive(
    file: UploadFile,
    service: ConversionService = Depends(get_conversion_service),
    limit: int = Depends(get_upload_limit),
) -> InspectResult:
    """Detect the backup format and summarize its contents."""
    content = await _read_upload(file, limit)
    try:
        return await service.inspect(content)
    except BackupFormatError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e


@router.post("/validate")
async def validate_archive(
    file: UploadFile,
    service: ConversionService = Depends(get_conversion_service),
    limit: int = Depends(get_upload_limit),
) -> ValidateResult:
    """Run structural checks and a full parse."""
    content = await _read_upload(file, limit)
    try:
        return await service.validate(content)
    except BackupFormatError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e


@router.post("/convert")
async def convert_archives(
    files: list[UploadFile],
    to: str = Form(...),
    from_format: str = Form("auto", alias="from"),
    redact: bool = Form(False),
    config_precedence: str = Form("latest"),
    config_source_index: int = Form(0),
    template: UploadFile | None = None,
    service: ConversionService = Depends(get_conversion_service),
    limit: int = Depends(get_upload_limit),
) -> Response:
    """Convert uploaded archives; the response body is the output zip."""
    inputs = [(f.filename or f"input-{i}.zip", await _read_upload(f, limit)) for i, f in enumerate(files, 1)]
    options = ConvertOptions(
        inputs=inputs,
        from_format=from_format,
        to_format=to,
        redact_secrets=redact,
        template=await _read_upload(template, limit) if template is not None else None,
        config_precedence=config_precedence,
        config_source_index=config_source_index,
    )
    try:
        result = await service.convert(options)
    except BackupFormatError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e

    return Response(
        content=result.archive,
        media_type="application/zip",
        headers={
            "Content-Disposition": f'attachment; filename="cherrikka-{result.manifest.target_format}.zip"',
            # ASCII-only JSON, header values must be latin-1
            "X-Cherrikka-Manifest": json.dumps(result.manifest.to_wire(), separators=(",", ":")),
        },
    )
