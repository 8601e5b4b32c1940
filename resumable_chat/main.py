from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from motor.motor_asyncio import AsyncIOMotorClient
from resumable_chat.core.config import Settings, settings
from resumable_chat.core.exceptions import BadRequestError, ChatError
from resumable_chat.api.endpoints import auth, chat, history
from resumable_chat.services.chat import ChatService
from resumable_chat.services.generation import GenerationDriver
from resumable_chat.services.llm import LanguageModel, build_language_model
from resumable_chat.services.resume import ResumeCoordinator
from resumable_chat.services.stream_registry import StreamRegistry
from resumable_chat.services.stream_transport import StreamTransport, build_stream_transport
import logging

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(title="Resumable Chat")

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS_LIST,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type"],
)

# Include routers
app.include_router(auth.router, prefix="/api/auth")
app.include_router(chat.router, prefix="/api/chat")
app.include_router(history.router, prefix="/api/history")


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload(), headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    logger.info(f"Request validation failed on {request.url.path}: {exc.errors()}")
    error = BadRequestError()
    return JSONResponse(status_code=error.status_code, content=error.to_payload())


@app.get("/ping", response_class=PlainTextResponse)
async def ping():
    return "pong"


def build_services(
    target: FastAPI,
    db,
    app_settings: Settings,
    transport: StreamTransport,
    model: LanguageModel,
) -> None:
    """Wire the chat services once and keep them on app.state"""
    chat_service = ChatService(db)
    registry = StreamRegistry(db)

    target.state.settings = app_settings
    target.state.mongodb = db
    target.state.stream_transport = transport
    target.state.chat_service = chat_service
    target.state.generation_driver = GenerationDriver(
        chat_service,
        registry,
        transport,
        model,
        timeout_seconds=app_settings.GENERATION_TIMEOUT_SECONDS,
        max_tokens=app_settings.MAX_COMPLETION_TOKENS,
    )
    target.state.resume_coordinator = ResumeCoordinator(
        chat_service,
        registry,
        transport,
        freshness_seconds=app_settings.RESUME_FRESHNESS_SECONDS,
    )


@app.on_event("startup")
async def startup_services():
    app.state.mongodb_client = AsyncIOMotorClient(settings.MONGODB_URL, tz_aware=True)
    build_services(
        app,
        app.state.mongodb_client[settings.DATABASE_NAME],
        settings,
        build_stream_transport(settings),
        build_language_model(settings),
    )
    logger.info("Chat services started")


@app.on_event("shutdown")
async def shutdown_services():
    # Let in-flight generations finish so their messages get persisted
    try:
        await app.state.generation_driver.shutdown(settings.GENERATION_TIMEOUT_SECONDS)
    except Exception as e:
        logger.error(f"Error draining generations: {e}")

    try:
        await app.state.stream_transport.close()
    except Exception as e:
        logger.error(f"Error closing stream transport: {e}")

    # Close database connection
    app.state.mongodb_client.close()
