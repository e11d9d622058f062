import logging
import sys

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

from dotenv import load_dotenv

load_dotenv()

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, List, Optional

import httpx
import uvicorn
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.crud import (
    create_image,
    delete_image,
    delete_provider_config,
    delete_storybook,
    fetch_image_by_id,
    fetch_llm_config,
    fetch_pages_by_storybook_id,
    fetch_provider_config,
    fetch_storybook_by_id,
    list_configured_providers,
    list_images,
    list_storybooks,
    toggle_image_favorite,
    toggle_storybook_favorite,
    upsert_llm_config,
    upsert_provider_config,
)
from app.db import SessionLocal, engine, init_models
from app.errors import ConfigurationMissingError, NotFoundError, StorybookError, ValidationError
from app.image_dispatcher import DEFAULT_STYLE, GenerationDispatcher
from app.model_providers import ProviderRegistry
from app.models import DEFAULT_LLM_BASE_URL, DEFAULT_LLM_MODEL
from app.progress import CamelModel, get_status
from app.settings import AppConfig
from app.story_generator import StoryGenerator
from app.storybook_worker import StorybookOrchestrator
from app.utils import is_masked, mask_api_key

logger = logging.getLogger("storybook-app")


def build_services(app: FastAPI, session_factory, http_client: httpx.AsyncClient) -> None:
    """Wire the provider registry, dispatcher, story generator and orchestrator onto app.state."""
    registry = ProviderRegistry.from_config(http_client)
    dispatcher = GenerationDispatcher(registry, AppConfig.get_value("default_image_size"))
    app.state.http_client = http_client
    app.state.session_factory = session_factory
    app.state.registry = registry
    app.state.dispatcher = dispatcher
    app.state.orchestrator = StorybookOrchestrator(session_factory, StoryGenerator(), dispatcher)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_models(engine)
    http_client = httpx.AsyncClient(timeout=AppConfig.get_float("http_timeout"))
    build_services(app, SessionLocal, http_client)
    logger.info(f"Storybook server ready, database: {AppConfig.get_database_url()}")
    try:
        yield
    finally:
        await app.state.orchestrator.shutdown()
        await http_client.aclose()
        await engine.dispose()


app = FastAPI(title="Storybook", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=AppConfig.get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


async def get_db():
    async with SessionLocal() as session:
        yield session


def get_orchestrator(request: Request) -> StorybookOrchestrator:
    return request.app.state.orchestrator


def get_dispatcher(request: Request) -> GenerationDispatcher:
    return request.app.state.dispatcher


def success(data: Any = None) -> dict:
    return {"success": True, "data": data}


def failure(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


# --- Error handling ---
@app.exception_handler(StorybookError)
async def storybook_error_handler(request: Request, exc: StorybookError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return failure(exc.status_code, exc.message)


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    details = "; ".join(
        f"{'.'.join(str(p) for p in err['loc'] if p != 'body')}: {err['msg']}" for err in exc.errors()
    )
    return failure(400, f"Invalid request: {details}")


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return failure(exc.status_code, str(exc.detail))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"{request.method} {request.url.path} crashed")
    return failure(500, str(exc) or "Internal server error")


# --- Data models ---
class StorybookCreateRequest(CamelModel):
    theme: Optional[str] = None
    scene_count: int = 4
    style: str = DEFAULT_STYLE
    provider: str = "openai"


class StorybookCreated(CamelModel):
    id: int
    title: str
    theme: str
    status: str
    scene_count: int


class PageResponse(BaseModel):
    page_index: int
    text: str
    image_prompt: Optional[str] = None
    image_url: Optional[str] = None
    status: str


class StorybookResponse(BaseModel):
    id: int
    title: str
    theme: str
    style: str
    provider: str
    scene_count: int
    status: str
    is_favorite: bool
    created_at: Optional[datetime] = None
    pages: Optional[List[PageResponse]] = None


class GenerateImageRequest(BaseModel):
    story: Optional[str] = None
    style: Optional[str] = None
    provider: Optional[str] = None


class ImageResponse(BaseModel):
    id: int
    story: str
    style: str
    provider: str
    image_url: str
    enhanced_prompt: Optional[str] = None
    revised_prompt: Optional[str] = None
    is_favorite: bool
    created_at: Optional[datetime] = None


class ProviderConfigRequest(CamelModel):
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    model_name: Optional[str] = None


def storybook_response(storybook, pages=None) -> dict:
    response = StorybookResponse(
        id=storybook.id,
        title=storybook.title,
        theme=storybook.theme,
        style=storybook.style,
        provider=storybook.provider,
        scene_count=storybook.scene_count,
        status=storybook.status,
        is_favorite=bool(storybook.is_favorite),
        created_at=storybook.created_at,
        pages=None
        if pages is None
        else [
            PageResponse(
                page_index=p.page_index,
                text=p.text,
                image_prompt=p.image_prompt,
                image_url=p.image_url,
                status=p.status,
            )
            for p in pages
        ],
    )
    return response.model_dump(mode="json", exclude_none=pages is None)


def image_response(image) -> dict:
    return ImageResponse(
        id=image.id,
        story=image.story,
        style=image.style,
        provider=image.provider,
        image_url=image.image_url,
        enhanced_prompt=image.enhanced_prompt,
        revised_prompt=image.revised_prompt,
        is_favorite=bool(image.is_favorite),
        created_at=image.created_at,
    ).model_dump(mode="json")


# --- Storybooks ---
@app.post("/api/storybook/generate")
async def create_storybook_endpoint(
    req: StorybookCreateRequest,
    db: AsyncSession = Depends(get_db),
    orchestrator: StorybookOrchestrator = Depends(get_orchestrator),
):
    storybook = await orchestrator.create_storybook(
        db,
        theme=req.theme,
        scene_count=req.scene_count,
        style=req.style,
        provider=req.provider,
    )
    return success(
        StorybookCreated(
            id=storybook.id,
            title=storybook.title,
            theme=storybook.theme,
            status=storybook.status,
            scene_count=storybook.scene_count,
        ).model_dump(by_alias=True)
    )


@app.get("/api/storybook")
async def list_storybooks_endpoint(favorites: bool = False, db: AsyncSession = Depends(get_db)):
    storybooks = await list_storybooks(db, favorites_only=favorites)
    return success([storybook_response(s) for s in storybooks])


@app.get("/api/storybook/{storybook_id}")
async def get_storybook_endpoint(storybook_id: int, db: AsyncSession = Depends(get_db)):
    storybook = await fetch_storybook_by_id(db, storybook_id)
    if not storybook:
        raise NotFoundError("Storybook", storybook_id)
    pages = await fetch_pages_by_storybook_id(db, storybook_id)
    return success(storybook_response(storybook, pages))


@app.get("/api/storybook/{storybook_id}/status")
async def get_storybook_status_endpoint(storybook_id: int, db: AsyncSession = Depends(get_db)):
    snapshot = await get_status(db, storybook_id)
    return success(snapshot.model_dump(by_alias=True))


@app.patch("/api/storybook/{storybook_id}/favorite")
async def toggle_storybook_favorite_endpoint(storybook_id: int, db: AsyncSession = Depends(get_db)):
    is_favorite = await toggle_storybook_favorite(db, storybook_id)
    if is_favorite is None:
        raise NotFoundError("Storybook", storybook_id)
    return success({"is_favorite": is_favorite})


@app.delete("/api/storybook/{storybook_id}")
async def delete_storybook_endpoint(storybook_id: int, db: AsyncSession = Depends(get_db)):
    if not await delete_storybook(db, storybook_id):
        raise NotFoundError("Storybook", storybook_id)
    logger.info(f"Storybook {storybook_id} deleted")
    return success()


# --- Single image generation ---
@app.post("/api/generate")
async def generate_image_endpoint(
    req: GenerateImageRequest,
    db: AsyncSession = Depends(get_db),
    dispatcher: GenerationDispatcher = Depends(get_dispatcher),
):
    if not req.story or not req.story.strip():
        raise ValidationError("Please enter the story text")
    if not req.style:
        raise ValidationError("Please choose an illustration style")
    if not req.provider:
        raise ValidationError("Please choose an image provider")
    dispatcher.registry.get_provider(req.provider)

    config = await fetch_provider_config(db, req.provider)
    if not config:
        raise ConfigurationMissingError(req.provider)

    logger.info(f"Generate request: provider={req.provider}, style={req.style}, story={req.story[:50]!r}")
    enhanced_prompt = dispatcher.enhance(req.story, req.style)
    request = dispatcher.build_request(
        req.provider,
        enhanced_prompt,
        api_key=config.api_key,
        base_url=config.base_url,
        model=config.model_name,
    )
    result = await dispatcher.dispatch(req.provider, request)

    image = await create_image(
        db,
        story=req.story,
        style=req.style,
        provider=req.provider,
        image_url=result.url,
        enhanced_prompt=enhanced_prompt,
        revised_prompt=result.revised_prompt,
    )
    return success(
        {
            "id": image.id,
            "image_url": result.url,
            "enhanced_prompt": enhanced_prompt,
            "revised_prompt": result.revised_prompt,
        }
    )


@app.get("/api/generate/providers")
async def configured_providers_endpoint(db: AsyncSession = Depends(get_db)):
    return success({"configuredProviders": await list_configured_providers(db)})


# --- Image history ---
@app.get("/api/images")
async def list_images_endpoint(favorites: bool = False, db: AsyncSession = Depends(get_db)):
    images = await list_images(db, favorites_only=favorites)
    return success([image_response(i) for i in images])


@app.get("/api/images/{image_id}")
async def get_image_endpoint(image_id: int, db: AsyncSession = Depends(get_db)):
    image = await fetch_image_by_id(db, image_id)
    if not image:
        raise NotFoundError("Image", image_id)
    return success(image_response(image))


@app.patch("/api/images/{image_id}/favorite")
async def toggle_image_favorite_endpoint(image_id: int, db: AsyncSession = Depends(get_db)):
    is_favorite = await toggle_image_favorite(db, image_id)
    if is_favorite is None:
        raise NotFoundError("Image", image_id)
    return success({"is_favorite": is_favorite})


@app.delete("/api/images/{image_id}")
async def delete_image_endpoint(image_id: int, db: AsyncSession = Depends(get_db)):
    if not await delete_image(db, image_id):
        raise NotFoundError("Image", image_id)
    return success()


# --- Settings ---
@app.get("/api/settings/api-keys/list")
async def list_api_keys_endpoint(db: AsyncSession = Depends(get_db)):
    return success(await list_configured_providers(db))


@app.get("/api/settings/api-keys/{provider}")
async def get_api_key_endpoint(provider: str, db: AsyncSession = Depends(get_db)):
    config = await fetch_provider_config(db, provider)
    if not config:
        return success({"configured": False})
    return success(
        {
            "configured": True,
            "masked": mask_api_key(config.api_key),
            "baseUrl": config.base_url or "",
            "modelName": config.model_name or "",
        }
    )


@app.put("/api/settings/api-keys/{provider}")
async def put_api_key_endpoint(
    provider: str,
    req: ProviderConfigRequest,
    db: AsyncSession = Depends(get_db),
    dispatcher: GenerationDispatcher = Depends(get_dispatcher),
):
    dispatcher.registry.get_provider(provider)
    if not req.api_key or not req.api_key.strip():
        raise ValidationError("apiKey is required")

    api_key = req.api_key.strip()
    existing = await fetch_provider_config(db, provider)
    if existing and is_masked(api_key):
        # The settings form echoes the masked key back when only the URL or model changed
        api_key = existing.api_key

    logger.info(
        f"Saving provider config: provider={provider}, base_url={req.base_url or '(default)'}, "
        f"model={req.model_name or '(default)'}"
    )
    await upsert_provider_config(db, provider, api_key, req.base_url, req.model_name)
    return success({"provider": provider, "configured": True})


@app.delete("/api/settings/api-keys/{provider}")
async def delete_api_key_endpoint(provider: str, db: AsyncSession = Depends(get_db)):
    await delete_provider_config(db, provider)
    return success()


@app.get("/api/settings/llm-config")
async def get_llm_config_endpoint(db: AsyncSession = Depends(get_db)):
    config = await fetch_llm_config(db)
    base_url = (config.base_url if config else None) or DEFAULT_LLM_BASE_URL
    model_name = (config.model_name if config else None) or DEFAULT_LLM_MODEL
    if not config or not config.api_key:
        return success({"configured": False, "baseUrl": base_url, "modelName": model_name})
    return success(
        {
            "configured": True,
            "masked": mask_api_key(config.api_key),
            "baseUrl": base_url,
            "modelName": model_name,
        }
    )


@app.put("/api/settings/llm-config")
async def put_llm_config_endpoint(req: ProviderConfigRequest, db: AsyncSession = Depends(get_db)):
    if not req.api_key or not req.api_key.strip():
        raise ValidationError("apiKey is required")

    api_key = req.api_key.strip()
    existing = await fetch_llm_config(db)
    if existing and existing.api_key and is_masked(api_key):
        api_key = existing.api_key

    logger.info(
        f"Saving LLM config: base_url={req.base_url or '(default)'}, model={req.model_name or '(default)'}"
    )
    await upsert_llm_config(db, api_key, req.base_url, req.model_name)
    return success({"configured": True})


@app.get("/api/health")
def health():
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "database": AppConfig.get_database_url(),
    }


def serve():
    uvicorn.run(
        "app.main:app",
        host=AppConfig.get_value("host"),
        port=AppConfig.get_int("port"),
    )


if __name__ == "__main__":
    serve()
