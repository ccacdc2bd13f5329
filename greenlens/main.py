"""
GreenLens HTTP API

Upload expense files for analysis, restore the latest stored analysis, and
reset it.

Run with: uvicorn greenlens.main:app --reload --port 8000
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional

from dotenv import load_dotenv
load_dotenv()
from fastapi import Depends, FastAPI, File, Form, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from .insights import score_label, sustainability_score, top_category
from .pipeline import ExpensePipeline, FileQueue, FileState, InputFile, PipelineSession

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

VERSION = "1.0.0"

_pipeline: Optional[ExpensePipeline] = None


def get_pipeline() -> ExpensePipeline:
    """Shared pipeline instance, created on first use."""
    global _pipeline
    if _pipeline is None:
        _pipeline = ExpensePipeline.from_settings()
    return _pipeline


# =============================================================================
# RESPONSE MODELS
# =============================================================================

class FileStatusResponse(BaseModel):
    name: str
    status: str
    message: Optional[str] = None
    record_count: int = 0


def _file_statuses(files: List[InputFile], states: List[FileState]) -> List[dict]:
    return [
        FileStatusResponse(
            name=file.name,
            status=state.status.value,
            message=state.message,
            record_count=state.record_count,
        ).model_dump()
        for file, state in zip(files, states)
    ]


# =============================================================================
# FASTAPI APPLICATION
# =============================================================================

app = FastAPI(
    title="GreenLens",
    description="Expense ingestion and carbon estimation",
    version=VERSION,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": VERSION,
    }


@app.post("/api/v1/analysis")
async def analyze_files(
    files: List[UploadFile] = File(...),
    rules_only: bool = Form(False),
    pipeline: ExpensePipeline = Depends(get_pipeline),
):
    """
    Run the full pipeline over the uploaded files.

    Unsupported files are rejected up front; the rest are processed in
    upload order and each reports its own status.
    """
    queue = FileQueue()
    uploads = []
    for upload in files:
        uploads.append(InputFile(
            name=upload.filename or "upload",
            content=await upload.read(),
            content_type=upload.content_type,
        ))
    rejected = queue.add_many(uploads)

    if len(queue) == 0:
        raise HTTPException(status_code=400, detail={"error": "No supported files uploaded", "rejected": rejected})

    session = PipelineSession.from_queue(queue, rules_only=rules_only)
    outcome = await pipeline.run(session)
    statuses = _file_statuses(session.files, outcome.file_states)

    if not outcome.ok:
        raise HTTPException(status_code=422, detail={"error": outcome.error, "files": statuses})

    return {
        "result": outcome.result.to_dict(),
        "files": statuses,
        "rejected": rejected,
        "classification_error": outcome.classification_error,
        "retry_rules_only": outcome.retry_rules_only,
    }


@app.get("/api/v1/analysis")
async def get_analysis(pipeline: ExpensePipeline = Depends(get_pipeline)):
    """Restore the most recent analysis."""
    result = await pipeline.load_previous()
    if result is None:
        raise HTTPException(status_code=404, detail="No analysis stored")

    score = sustainability_score(result)
    return {
        "result": result.to_dict(),
        "score": score,
        "score_label": score_label(score) if score is not None else None,
        "top_category": top_category(result).value,
    }


@app.delete("/api/v1/analysis")
async def reset_analysis(pipeline: ExpensePipeline = Depends(get_pipeline)):
    """Clear the stored analysis."""
    await pipeline.reset()
    return {"status": "cleared"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
