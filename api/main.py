from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, File, Form, HTTPException, Query, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from plan_takeoff.exceptions import ConfigurationError
from plan_takeoff.extraction import TakeoffAnalyzer
from plan_takeoff.jobs import JobQueue
from plan_takeoff.main import build_default_pipeline
from plan_takeoff.missing_info import MissingInformationAnalyzer
from plan_takeoff.providers import build_providers
from plan_takeoff.retrieval import ChromaChunkStore, PlanRetriever
from plan_takeoff.embeddings import OpenAIEmbedder
from plan_takeoff.schemas import MergedTakeoffItem, ReviewFindings

# One queue per app start; its workers run on the serving event loop
queue: Optional[JobQueue] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global queue
    queue = JobQueue()
    await queue.start()
    yield
    await queue.stop()


app = FastAPI(title="PlanTakeoff", lifespan=lifespan)
app.add_middleware(CORSMiddleware,
    allow_origins=["http://localhost:5173"],
    allow_methods=["*"], allow_headers=["*"])


@app.exception_handler(ConfigurationError)
async def configuration_error(request, exc: ConfigurationError):
    return JSONResponse(status_code=503, content={"detail": str(exc)})


_retriever: Optional[PlanRetriever] = None


def get_retriever() -> PlanRetriever:
    global _retriever
    if _retriever is None:
        _retriever = PlanRetriever(OpenAIEmbedder.from_config(), ChromaChunkStore.persistent())
    return _retriever


class TakeoffRequest(BaseModel):
    images: List[str] = Field(..., min_length=1)
    system_prompt: Optional[str] = None
    user_prompt: Optional[str] = None


class MissingInfoRequest(BaseModel):
    items: List[MergedTakeoffItem]
    review_findings: Optional[ReviewFindings] = None


def _dump_job(job):
    data = job.model_dump(mode="json")
    if job.result is not None and hasattr(job.result, "model_dump"):
        data["result"] = job.result.model_dump(mode="json")
    return data


@app.post("/plans/{plan_id}/ingest")
async def ingest(
    plan_id: str,
    file: Optional[UploadFile] = File(None),
    file_path: Optional[str] = Form(None),
):
    if file is None and not file_path:
        raise HTTPException(400, "Upload a PDF or pass file_path")
    pipeline = build_default_pipeline()
    if file is not None:
        content = await file.read()
        job = await queue.submit("ingest", pipeline.run, plan_id=plan_id,
                                 pdf_bytes=content, file_name=file.filename)
    else:
        job = await queue.submit("ingest", pipeline.run, plan_id=plan_id, file_path=file_path)
    return {"job_id": job.job_id, "status": job.status}


@app.post("/plans/{plan_id}/takeoff")
async def takeoff(plan_id: str, body: TakeoffRequest):
    analyzer = TakeoffAnalyzer(build_providers())

    async def run(plan_id: str):
        return await analyzer.analyze(body.images, body.system_prompt, body.user_prompt)

    job = await queue.submit("takeoff", run, plan_id=plan_id)
    return {"job_id": job.job_id, "status": job.status}


@app.get("/jobs/{job_id}")
def get_job(job_id: str):
    job = queue.get(job_id)
    if job is None:
        raise HTTPException(404, "Job not found")
    return _dump_job(job)


@app.get("/jobs")
def list_jobs():
    return [_dump_job(j) for j in queue.list_jobs()]


@app.delete("/jobs/{job_id}")
def delete_job(job_id: str):
    job = queue.get(job_id)
    if job is None:
        raise HTTPException(404, "Job not found")
    if not queue.delete(job_id):
        raise HTTPException(409, f"Job is still {job.status}")
    return {"deleted": job_id}


@app.get("/plans/{plan_id}/chunks")
def search_chunks(plan_id: str, query: str, top_k: int = Query(6, ge=1, le=50)):
    hits = get_retriever().retrieve(plan_id, query, top_k=top_k)
    return [h.model_dump() for h in hits]


@app.get("/plans/{plan_id}/chunks/by-page")
def chunks_by_page(plan_id: str, pages: List[int] = Query(...)):
    hits = get_retriever().fetch_chunks_by_page(plan_id, pages)
    return [h.model_dump() for h in hits]


@app.get("/plans/{plan_id}/chunks/sample")
def sample_chunks(plan_id: str):
    return [h.model_dump() for h in get_retriever().sample(plan_id)]


@app.post("/takeoff/missing-information")
def missing_information(body: MissingInfoRequest):
    analysis = MissingInformationAnalyzer().analyze(body.items, body.review_findings)
    return analysis.model_dump()
