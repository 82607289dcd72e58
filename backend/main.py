from __future__ import annotations

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

from sysupdate.core import storage
from sysupdate.core.aggregator import aggregate
from sysupdate.core.classifier import OutcomeClassifier
from sysupdate.core.dialects import get_dialect
from sysupdate.core.utils import TOOL_VERSION

app = FastAPI(title="sysupdate API", version=TOOL_VERSION)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"]
)


class ClassifyRequest(BaseModel):
    text: str
    dialect: str = "apt"
    source: str = "captured-output"


@app.get("/api/health")
def health():
    return {"status": "ok"}


@app.post("/api/classify")
def classify(req: ClassifyRequest):
    try:
        dialect = get_dialect(req.dialect)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    findings = OutcomeClassifier(dialect).classify(req.text, req.source)
    tiers = aggregate(findings)
    return {
        "findings": [f.model_dump(mode="json") for f in findings],
        "tiers": {
            severity.value: [f.model_dump(mode="json") for f in items]
            for severity, items in tiers.items()
        },
    }


@app.get("/api/runs")
def list_runs():
    return storage.list_runs()


@app.get("/api/runs/{run_id}")
def get_run(run_id: str):
    data = storage.load_run(run_id)
    if not data:
        raise HTTPException(status_code=404, detail="Run not found")
    return data


@app.get("/api/runs/{run_id}/log")
def get_log(run_id: str):
    log_path = storage.get_run_log_path(run_id)
    if not log_path or not log_path.exists():
        raise HTTPException(status_code=404, detail="Log not found")
    return PlainTextResponse(log_path.read_text(encoding="utf-8", errors="replace"))
