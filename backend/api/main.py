import asyncio
import hmac
import logging
import os
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import Depends, FastAPI, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from core.errors import AuthorizationError, ChapterforgeError, NotFoundError, ValidationError
from core.llm_client import LLMClient, create_llm_client
from memory import StoryStore
from models import EngineConfig, Project, ProjectStatus, RetryExhaustedPolicy
from services.job_manager import JobManager
from services.scheduler import start_eligible_jobs

BACKEND_ROOT = Path(__file__).resolve().parents[1]
SUPPORTED_PROVIDERS = ("openai", "deepseek", "gemini")


class Settings(BaseSettings):
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    data_dir: str = "../data"
    api_token: Optional[str] = None

    llm_provider: str = "openai"
    remote_llm_enabled: bool = False
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"
    openai_base_url: str = "https://api.openai.com/v1"
    deepseek_api_key: Optional[str] = None
    deepseek_model: str = "deepseek-chat"
    deepseek_base_url: str = "https://api.deepseek.com"
    gemini_api_key: Optional[str] = None
    gemini_model: str = "gemini-2.0-flash"
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta/openai/"
    llm_temperature: float = 0.75
    llm_max_tokens: int = 32768

    target_word_count: int = 2800
    word_count_tolerance: float = 0.25
    min_quality_score: int = 70
    max_attempts: int = 3
    title_similarity_threshold: float = 0.7
    retry_exhausted_policy: RetryExhaustedPolicy = RetryExhaustedPolicy.ACCEPT_BEST
    critic_use_llm: bool = True

    job_timeout_minutes: int = 15
    max_concurrent_jobs: int = 4
    watchdog_sweep_seconds: int = 0

    log_level: str = "INFO"
    enable_http_logging: bool = True
    log_file: Optional[str] = None

    model_config = SettingsConfigDict(
        extra="ignore",
        env_file=str(BACKEND_ROOT / ".env"),
        env_file_encoding="utf-8",
    )

    def engine_config(self) -> EngineConfig:
        return EngineConfig(
            target_word_count=self.target_word_count,
            word_count_tolerance=self.word_count_tolerance,
            min_quality_score=self.min_quality_score,
            max_attempts=max(1, min(3, self.max_attempts)),
            title_similarity_threshold=self.title_similarity_threshold,
            retry_exhausted_policy=self.retry_exhausted_policy,
            critic_use_llm=self.critic_use_llm,
            temperature=self.llm_temperature,
            max_tokens=self.llm_max_tokens,
            job_timeout_minutes=self.job_timeout_minutes,
            max_concurrent_jobs=max(1, self.max_concurrent_jobs),
        )


settings = Settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
)
logger = logging.getLogger("chapterforge.api")
if settings.log_file:
    log_path = Path(settings.log_file).expanduser().resolve()
    log_path.parent.mkdir(parents=True, exist_ok=True)
    root_logger = logging.getLogger("chapterforge")
    if not any(
        isinstance(handler, logging.FileHandler) and getattr(handler, "baseFilename", None) == str(log_path)
        for handler in root_logger.handlers
    ):
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
        file_handler.setFormatter(logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s"))
        root_logger.addHandler(file_handler)
        logger.info("file logging enabled path=%s", log_path)


def data_root() -> Path:
    configured = Path(settings.data_dir)
    if configured.is_absolute():
        root = configured.resolve()
    else:
        root = (BACKEND_ROOT / configured).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def database_path() -> Path:
    return data_root() / "chapterforge.db"


def _normalize_provider(provider: str) -> str:
    candidate = (provider or "openai").strip().lower()
    if candidate not in SUPPORTED_PROVIDERS:
        logger.warning("invalid llm provider configured=%s fallback=openai", provider)
        return "openai"
    return candidate


def resolve_llm_runtime() -> Dict[str, Any]:
    requested_provider = _normalize_provider(settings.llm_provider)
    keys = {
        "openai": (settings.openai_api_key or "").strip(),
        "deepseek": (settings.deepseek_api_key or "").strip(),
        "gemini": (settings.gemini_api_key or "").strip(),
    }

    remote_requested = settings.remote_llm_enabled
    remote_effective = remote_requested
    auto_enabled = False
    if os.getenv("REMOTE_LLM_ENABLED") is None and not remote_requested and any(keys.values()):
        # Keys present and REMOTE_LLM_ENABLED left unset: go remote.
        remote_effective = True
        auto_enabled = True

    effective_provider = requested_provider
    provider_switch_reason = "configured"
    if not keys[requested_provider]:
        for candidate in SUPPORTED_PROVIDERS:
            if keys[candidate]:
                effective_provider = candidate
                provider_switch_reason = f"switched_to_{candidate}_missing_{requested_provider}_key"
                break

    model = getattr(settings, f"{effective_provider}_model")
    base_url = getattr(settings, f"{effective_provider}_base_url")
    provider_key = keys[effective_provider]
    return {
        "requested_provider": requested_provider,
        "effective_provider": effective_provider,
        "provider_switch_reason": provider_switch_reason,
        "effective_model": model,
        "effective_base_url": base_url,
        "provider_key": provider_key,
        "remote_requested": remote_requested,
        "remote_effective": remote_effective,
        "remote_ready": remote_effective and bool(provider_key),
        "remote_auto_enabled": auto_enabled,
        "has_openai_key": bool(keys["openai"]),
        "has_deepseek_key": bool(keys["deepseek"]),
        "has_gemini_key": bool(keys["gemini"]),
    }


def build_llm_client(runtime: Dict[str, Any]) -> LLMClient:
    if runtime["remote_effective"] and not runtime["remote_ready"]:
        logger.warning("remote llm requested but no matching api key; falling back to offline outputs")
    return create_llm_client(
        provider=runtime["effective_provider"],
        api_key=runtime["provider_key"] if runtime["remote_ready"] else "",
        model=runtime["effective_model"],
        base_url=runtime["effective_base_url"],
        chat_max_tokens=settings.llm_max_tokens,
        chat_temperature=settings.llm_temperature,
    )


async def _watchdog_loop(manager: JobManager, interval_seconds: int):
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            failed = await manager.sweep_stale()
            if failed:
                logger.warning("watchdog sweep failed_jobs=%d", len(failed))
        except Exception:
            logger.exception("watchdog sweep crashed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    runtime = resolve_llm_runtime()
    logger.info(
        "llm runtime requested_provider=%s effective_provider=%s model=%s remote_effective=%s remote_ready=%s auto_enabled=%s",
        runtime["requested_provider"],
        runtime["effective_provider"],
        runtime["effective_model"],
        runtime["remote_effective"],
        runtime["remote_ready"],
        runtime["remote_auto_enabled"],
    )
    store = StoryStore(str(database_path()))
    llm_client = build_llm_client(runtime)
    manager = JobManager(store, llm_client, settings.engine_config())
    app.state.store = store
    app.state.llm_client = llm_client
    app.state.manager = manager

    await manager.recover_orphans()
    sweep_task = None
    if settings.watchdog_sweep_seconds > 0:
        sweep_task = asyncio.create_task(_watchdog_loop(manager, settings.watchdog_sweep_seconds))
    try:
        yield
    finally:
        if sweep_task is not None:
            sweep_task.cancel()
            await asyncio.gather(sweep_task, return_exceptions=True)
        interrupted = await manager.shutdown()
        if interrupted:
            logger.warning("shutdown interrupted jobs count=%d", len(interrupted))


app = FastAPI(title="Chapterforge API", version="1.0.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def http_access_log_middleware(request: Request, call_next):
    if not settings.enable_http_logging:
        return await call_next(request)

    request_id = uuid4().hex[:8]
    started = time.perf_counter()
    logger.info(
        "REQ start id=%s method=%s path=%s query=%s",
        request_id,
        request.method,
        request.url.path,
        request.url.query or "-",
    )
    try:
        response = await call_next(request)
    except Exception:
        elapsed = (time.perf_counter() - started) * 1000
        logger.exception("REQ failed id=%s duration_ms=%.2f", request_id, elapsed)
        raise

    elapsed = (time.perf_counter() - started) * 1000
    response.headers["X-Request-ID"] = request_id
    logger.info(
        "REQ end id=%s status=%s duration_ms=%.2f",
        request_id,
        response.status_code,
        elapsed,
    )
    return response


@app.exception_handler(ChapterforgeError)
async def chapterforge_error_handler(request: Request, exc: ChapterforgeError):
    if exc.http_status >= 500:
        logger.warning("request error path=%s code=%s error=%s", request.url.path, exc.error_code, exc.message)
    return JSONResponse(
        status_code=exc.http_status,
        content={"detail": exc.message, "error_code": exc.error_code},
    )


def require_token(authorization: Optional[str] = Header(default=None)):
    expected = (settings.api_token or "").strip()
    if not expected:
        return
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(token.strip(), expected):
        raise AuthorizationError("Missing or invalid bearer token")


def get_store(request: Request) -> StoryStore:
    return request.app.state.store


def get_manager(request: Request) -> JobManager:
    return request.app.state.manager


class CreateProjectRequest(BaseModel):
    title: str = Field(min_length=1)
    genre: str = "fantasy"
    protagonist_name: str = ""
    world_description: str = ""
    total_planned_chapters: int = Field(default=1000, ge=1)
    target_chapter_length: Optional[int] = Field(default=None, ge=200)
    temperature: Optional[float] = Field(default=None, ge=0, le=2)
    ai_model: Optional[str] = None
    story_bible: Optional[str] = None
    master_outline: Optional[str] = None


class ProjectStatusRequest(BaseModel):
    status: ProjectStatus


class StartJobRequest(BaseModel):
    project_id: str = Field(min_length=1)


@app.post("/api/projects")
async def create_project(req: CreateProjectRequest, store: StoryStore = Depends(get_store)):
    project = Project(
        id=str(uuid4()),
        title=req.title,
        genre=req.genre,
        protagonist_name=req.protagonist_name,
        world_description=req.world_description,
        total_planned_chapters=req.total_planned_chapters,
        target_chapter_length=req.target_chapter_length or settings.target_word_count,
        temperature=req.temperature,
        ai_model=req.ai_model,
        story_bible=req.story_bible,
        master_outline=req.master_outline,
    )
    await asyncio.to_thread(store.create_project, project)
    logger.info("project created project_id=%s genre=%s", project.id, project.genre)
    return project.model_dump(mode="json")


@app.get("/api/projects/{project_id}")
async def get_project(project_id: str, store: StoryStore = Depends(get_store)):
    project = await asyncio.to_thread(store.get_project, project_id)
    if project is None:
        raise NotFoundError("Project not found")
    return project.model_dump(mode="json")


@app.post("/api/projects/{project_id}/status")
async def set_project_status(
    project_id: str,
    req: ProjectStatusRequest,
    store: StoryStore = Depends(get_store),
):
    if req.status == ProjectStatus.COMPLETED:
        raise ValidationError("Projects are completed by writing their final chapter")
    project = await asyncio.to_thread(store.update_project_status, project_id, req.status)
    return project.model_dump(mode="json")


@app.get("/api/projects/{project_id}/chapters")
async def list_project_chapters(project_id: str, limit: int = 100, store: StoryStore = Depends(get_store)):
    project = await asyncio.to_thread(store.get_project, project_id)
    if project is None:
        raise NotFoundError("Project not found")
    rows = await asyncio.to_thread(
        store.list_chapter_titles,
        project_id,
        project.current_chapter + 1,
        max(1, min(limit, 1000)),
    )
    return {"project_id": project_id, "current_chapter": project.current_chapter, "chapters": rows}


@app.post("/api/jobs", dependencies=[Depends(require_token)])
async def start_job(req: StartJobRequest, manager: JobManager = Depends(get_manager)):
    job_id = await manager.create(req.project_id)
    return {"job_id": job_id, "status": "pending"}


@app.get("/api/jobs/{job_id}", dependencies=[Depends(require_token)])
async def get_job(job_id: str, manager: JobManager = Depends(get_manager)):
    job = await manager.get(job_id)
    return job.model_dump(mode="json")


@app.post("/api/jobs/{job_id}/stop", dependencies=[Depends(require_token)])
async def stop_job(job_id: str, manager: JobManager = Depends(get_manager)):
    job = await manager.stop(job_id)
    return job.model_dump(mode="json")


@app.post("/api/scheduler/tick", dependencies=[Depends(require_token)])
async def scheduler_tick(
    manager: JobManager = Depends(get_manager),
    store: StoryStore = Depends(get_store),
):
    started, skipped = await start_eligible_jobs(manager, store)
    return {"started": started, "skipped": skipped}


@app.get("/api/runtime/llm")
async def llm_runtime_status():
    runtime = resolve_llm_runtime()
    return {
        "requested_provider": runtime["requested_provider"],
        "effective_provider": runtime["effective_provider"],
        "effective_model": runtime["effective_model"],
        "effective_base_url": runtime["effective_base_url"],
        "provider_switch_reason": runtime["provider_switch_reason"],
        "remote_requested": runtime["remote_requested"],
        "remote_effective": runtime["remote_effective"],
        "remote_ready": runtime["remote_ready"],
        "remote_auto_enabled": runtime["remote_auto_enabled"],
        "has_openai_key": runtime["has_openai_key"],
        "has_deepseek_key": runtime["has_deepseek_key"],
        "has_gemini_key": runtime["has_gemini_key"],
        "llm_temperature": settings.llm_temperature,
        "llm_max_tokens": settings.llm_max_tokens,
    }


@app.get("/api/health")
async def health_check(request: Request):
    manager: JobManager = request.app.state.manager
    return {
        "status": "healthy",
        "running_jobs": len(manager.runner.active_job_ids()),
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.api_host, port=settings.api_port)
