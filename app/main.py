# main.py: FastAPI RAG chatbot with Gemini key rotation and Telegram hand-off
# - Endpoints: /health, /api/chat, /ws/chat, /api/telegram, /ingest (+ debug routes)
# - Middleware: CORS, admin API key, request-size limit, JSON access log; Prometheus /metrics
# - Services are built in the lifespan; an empty key list aborts startup

import hmac
import logging
import socket
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator
from pydantic import ValidationError

from .settings import settings
from .answering.composer import AnswerComposer
from .answering.formatting import BUSY_MESSAGE, INTERNAL_ERROR_MESSAGE
from .connections import ConnectionManager
from .credentials import CredentialPool
from .errors import AllCredentialsExhaustedError, EmptyPoolError
from .escalation import EscalationNotifier, TelegramChannel
from .gemini import GeminiClient
from .ingest import ingest
from .metrics import rag_chat_outcomes_total, rag_human_replies_total
from .pipeline import ChatPipeline
from .retrieval import ChromaStore, build_retriever
from .retry import RotatingRetryExecutor
from .middleware.api_key import APIKeyMiddleware
from .middleware.logging import LoggingMiddleware
from .middleware.max_size import MaxSizeMiddleware
from .models import (
    ChatRequest,
    ChatResponse,
    IngestRequest,
    IngestResponse,
    PassageOut,
    TelegramUpdate,
)

# ------------------------------------------------------------------------------
# Logging
# ------------------------------------------------------------------------------
logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# ------------------------------------------------------------------------------
# Lifespan: build the service graph once
# ------------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        pool = CredentialPool(settings.credential_values())
    except EmptyPoolError:
        logger.critical("GEMINI_API_KEYS is empty; refusing to start")
        raise

    executor = RotatingRetryExecutor(
        pool,
        max_cycles=settings.retry_max_cycles,
        cooldown_s=settings.retry_cooldown_s,
        backoff_s=settings.retry_backoff_s,
    )
    gemini = GeminiClient(
        executor,
        base_url=settings.gemini_base_url,
        model=settings.gemini_model,
        embed_model=settings.gemini_embed_model,
        timeout=settings.gemini_timeout,
    )
    store = ChromaStore(settings.chroma_dir, settings.collection_name)
    channel = TelegramChannel(
        settings.telegram_bot_token,
        settings.telegram_admin_chat_id,
        api_base=settings.telegram_api_base,
        timeout=settings.telegram_timeout,
    )
    notifier = EscalationNotifier(channel)

    app.state.pool = pool
    app.state.gemini = gemini
    app.state.store = store
    app.state.notifier = notifier
    app.state.connections = ConnectionManager()
    app.state.pipeline = ChatPipeline(
        retriever=build_retriever(store, gemini, settings),
        composer=AnswerComposer(
            gemini,
            temperature=settings.temperature,
            max_output_tokens=settings.max_output_tokens,
            safety_fallback=settings.safety_fallback,
        ),
        notifier=notifier,
        answer_header=settings.answer_header,
        fallback_index_url=settings.fallback_index_url,
        rewrite_query=settings.rewrite_query,
    )
    logger.info("Started with %d Gemini key(s), model=%s, escalation=%s",
                pool.size(), settings.gemini_model, "on" if channel.configured else "off")
    try:
        yield
    finally:
        await gemini.aclose()
        await channel.aclose()

# ------------------------------------------------------------------------------
# FastAPI app & middleware wiring
# ------------------------------------------------------------------------------
app = FastAPI(
    title="RAGDesk",
    description="Retrieval-augmented Q&A over a document library, with Gemini key rotation "
                "and human hand-off through Telegram.",
    version="0.4.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list(),
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(APIKeyMiddleware)
app.add_middleware(MaxSizeMiddleware, max_bytes=settings.max_bytes)
app.add_middleware(LoggingMiddleware)

# Prometheus /metrics
Instrumentator().instrument(app).expose(app)

# ==============================================================================
# Routes
# ==============================================================================

@app.get("/health")
async def health(request: Request):
    store = request.app.state.store
    return {
        "status": "ok",
        "model": settings.gemini_model,
        "keys": request.app.state.pool.size(),
        "chunks": await run_in_threadpool(store.count),
        "escalation": request.app.state.notifier.channel.configured,
        "host": socket.gethostname(),
    }

@app.post("/api/chat", response_model=ChatResponse)
async def chat(req: ChatRequest, request: Request):
    pipeline: ChatPipeline = request.app.state.pipeline
    try:
        result = await pipeline.answer(req.question)
    except AllCredentialsExhaustedError:
        rag_chat_outcomes_total.labels(outcome="busy").inc()
        raise HTTPException(status_code=503, detail=BUSY_MESSAGE)
    except Exception:
        rag_chat_outcomes_total.labels(outcome="error").inc()
        logger.exception("/api/chat failed")
        raise HTTPException(status_code=500, detail=INTERNAL_ERROR_MESSAGE)
    return ChatResponse(answer=result.answer)

@app.websocket("/ws/chat")
async def chat_socket(websocket: WebSocket):
    """
    Live session: each {"question": ...} gets an {"type": "answer"} reply.
    Operator replies to escalations raised from this session arrive later as
    {"type": "human_reply"} messages.
    """
    connections: ConnectionManager = websocket.app.state.connections
    notifier: EscalationNotifier = websocket.app.state.notifier
    pipeline: ChatPipeline = websocket.app.state.pipeline

    await websocket.accept()
    connection_id = connections.register(websocket)
    await websocket.send_json({"type": "connected", "connection_id": connection_id})
    try:
        while True:
            try:
                req = ChatRequest.model_validate(await websocket.receive_json())
            except (ValueError, ValidationError):
                await websocket.send_json({"type": "error", "detail": "A non-empty 'question' is required."})
                continue
            try:
                result = await pipeline.answer(req.question, connection_id=connection_id)
            except AllCredentialsExhaustedError:
                rag_chat_outcomes_total.labels(outcome="busy").inc()
                await websocket.send_json({"type": "error", "detail": BUSY_MESSAGE})
                continue
            except Exception:
                rag_chat_outcomes_total.labels(outcome="error").inc()
                logger.exception("/ws/chat failed")
                await websocket.send_json({"type": "error", "detail": INTERNAL_ERROR_MESSAGE})
                continue
            await websocket.send_json({"type": "answer", "answer": result.answer})
    except WebSocketDisconnect:
        logger.info("Connection %s closed", connection_id)
    finally:
        connections.unregister(connection_id)
        notifier.connection_closed(connection_id)

@app.post("/api/telegram")
async def telegram_webhook(update: TelegramUpdate, request: Request):
    """Route an operator's reply back to the user who asked."""
    secret = settings.telegram_webhook_secret
    if secret:
        provided = request.headers.get("x-telegram-bot-api-secret-token") or ""
        if not hmac.compare_digest(provided, secret):
            raise HTTPException(status_code=403, detail="bad webhook secret")

    msg = update.message
    if msg is None or msg.reply_to_message is None or not msg.text:
        return {"ok": True, "delivered": False}
    if str(msg.chat.id) != str(settings.telegram_admin_chat_id):
        logger.warning("Ignoring reply from unexpected chat %s", msg.chat.id)
        return {"ok": True, "delivered": False}

    notifier: EscalationNotifier = request.app.state.notifier
    connections: ConnectionManager = request.app.state.connections
    connection_id = notifier.route_reply(str(msg.reply_to_message.message_id))
    delivered = False
    if connection_id:
        delivered = await connections.send(
            connection_id, {"type": "human_reply", "answer": msg.text}
        )
    rag_human_replies_total.labels(delivered=str(delivered).lower()).inc()
    logger.info("Operator reply to %s delivered=%s", msg.reply_to_message.message_id, delivered)
    return {"ok": True, "delivered": delivered}

@app.post("/ingest", response_model=IngestResponse)
async def ingest_route(req: IngestRequest, request: Request):
    documents = [d.model_dump() for d in req.documents]
    try:
        added = await ingest(request.app.state.store, request.app.state.gemini, req.paths, documents)
    except HTTPException:
        raise
    except AllCredentialsExhaustedError:
        raise HTTPException(status_code=503, detail=BUSY_MESSAGE)
    except Exception:
        logger.exception("/ingest failed")
        raise HTTPException(status_code=500, detail=INTERNAL_ERROR_MESSAGE)
    return IngestResponse(ingested_chunks=added)

# --- Debug routes ---
@app.get("/debug/search", response_model=list[PassageOut])
async def debug_search(request: Request, q: str = Query(..., min_length=1)):
    passages = await request.app.state.pipeline.retriever.retrieve(q)
    return [PassageOut(content=p.content, source=p.source, score=p.score) for p in passages]

@app.get("/debug/samples", response_model=list[PassageOut])
async def debug_samples(request: Request, n: int = Query(4, ge=1, le=50)):
    passages = await run_in_threadpool(request.app.state.store.sample, n)
    return [PassageOut(content=p.content, source=p.source, score=p.score) for p in passages]
