from __future__ import annotations

from fastapi import FastAPI, UploadFile, File, HTTPException, Form
from fastapi.middleware.cors import CORSMiddleware
import logging
import os
import tempfile
from typing import Optional

from automapper.errors import AutoMapperError
from automapper.pipeline.automap import AutoMapper
from automapper.pipeline.config import GenerationOptions

logger = logging.getLogger(__name__)

app = FastAPI()


# Helper parsers
def parse_bool_env(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "y", "on"}


# Allow CORS for frontend
allowed_origins_env = os.getenv("AUTOMAPPER_ALLOWED_ORIGINS")
allowed_origins = (
    [origin.strip() for origin in allowed_origins_env.split(",") if origin.strip()]
    if allowed_origins_env
    else ["http://localhost:5173"]
)
allow_credentials = parse_bool_env(os.getenv("AUTOMAPPER_ALLOW_CREDENTIALS"), False)

# Browsers block wildcard origins when allow_credentials=True, so disable credentials in that case
if "*" in allowed_origins and allow_credentials:
    allow_credentials = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=allow_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
)

mapper = AutoMapper()

# Optional: start with an exported model
MODEL_PATH = os.getenv("AUTOMAPPER_MODEL_PATH")
if MODEL_PATH:
    try:
        mapper.import_model(MODEL_PATH)
        logger.info(f"Loaded trained model from {MODEL_PATH}")
    except (OSError, ValueError, AutoMapperError) as e:
        logger.warning(f"Could not load model from {MODEL_PATH}: {e}; using the expert knowledge base")


@app.post("/api/automap")
async def automap(
    file: UploadFile = File(...),
    difficulty: int = Form(2),
    bpm: float = Form(120.0),
    offset: float = Form(0.0),
    min_note_interval: float = Form(150.0),
    use_trained_model: bool = Form(True),
    maimai_style: bool = Form(True),
    maimai_intensity: float = Form(0.7),
    start_offset: float = Form(0.0),
    max_duration: Optional[float] = Form(None),
):
    """
    Generate a chart for an uploaded audio file.

    Returns ``{"notes": [...], "diagnostics": {...}}``.  Audio that cannot
    be decoded yields an empty note list with ``diagnostics["error"]``.
    """
    options = GenerationOptions(
        difficulty=difficulty,
        bpm=bpm,
        offset=offset,
        min_note_interval=min_note_interval,
        use_trained_model=use_trained_model,
        maimai_style=maimai_style,
        maimai_intensity=maimai_intensity,
    )
    try:
        # Save uploaded file temporarily
        suffix = os.path.splitext(file.filename or "upload")[1]
        with tempfile.NamedTemporaryFile(delete=False, suffix=suffix) as tmp:
            tmp_path = tmp.name
            content = await file.read()
            tmp.write(content)

        try:
            result = await mapper.generate_from_file(
                tmp_path, options, start_offset=start_offset, max_duration=max_duration
            )
            return result.to_dict()
        finally:
            try:
                os.remove(tmp_path)
            except OSError:
                pass

    except HTTPException:
        raise
    except Exception as e:
        logger.exception(f"API Error: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/health")
def health_check():
    return {"status": "ok", "model_loaded": mapper.model_loaded}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
