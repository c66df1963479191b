"""
FastAPI application entry point.
Sets up CORS, health check, chat history endpoints and the voice WebSocket.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from kindred.config import settings
from kindred.errors import HistoryError, SynthesisError
from kindred.history.store import ChatHistoryStore
from kindred.llm.openai_client import OpenAIClient
from kindred.models import Message, UserProfile
from kindred.orchestration.chat_session import ChatSession
from kindred.orchestration.turn_controller import TurnController
from kindred.stt.base import TranscriptionProvider
from kindred.stt.client_relay import ClientRecognitionRelay
from kindred.stt.deepgram import DeepgramTranscription
from kindred.tts.speaker import ClientSpeaker, ElevenLabsSpeaker, PlaybackSpeaker
from kindred.tts.voices import Voice
from kindred.utils.audio import decode_audio_base64
from kindred.websocket import connection_manager

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan context manager.
    Handles startup and shutdown events.
    """
    logger.info("Kindred backend starting...")
    logger.info(f"Environment: {settings.environment}")
    logger.info(f"Host: {settings.host}:{settings.port}")
    logger.info(f"Frontend URL: {settings.frontend_url}")
    logger.info(f"OpenAI Model: {settings.openai_model}")
    logger.info(f"Transcription: {settings.transcription_backend}, synthesis: {settings.synthesis_backend}")
    logger.info(f"Wake phrase: '{settings.wake_phrase}', silence timeout: {settings.silence_timeout_ms}ms")
    if not settings.openai_api_key:
        logger.warning("OPENAI_API_KEY not set - every reply will be the fallback message")

    yield

    logger.info("Kindred backend shutting down...")


app = FastAPI(
    title="Kindred Companion API",
    description="Voice companion backend: hands-free conversation loop and chat history",
    version=VERSION,
    lifespan=lifespan,
)
app.state.history_store = ChatHistoryStore()

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url, "http://localhost:5000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
async def health_check() -> JSONResponse:
    """
    Health check endpoint.
    Returns 200 OK if server is running.
    """
    return JSONResponse(
        status_code=200,
        content={
            "status": "healthy",
            "environment": settings.environment,
            "version": VERSION,
            "active_sessions": connection_manager.get_session_count(),
        }
    )


@app.get("/api/history/{user}")
async def get_history(user: str, request: Request, days: Optional[int] = None) -> JSONResponse:
    """Chat history of the last ``days`` days, newest day first."""
    store: ChatHistoryStore = request.app.state.history_store
    chat_days = store.get_chat_history(user, days=days or settings.history_days)
    return JSONResponse(
        status_code=200,
        content={
            "user": user,
            "days": [day.model_dump(mode="json", exclude_none=True) for day in chat_days],
        }
    )


@app.delete("/api/history/{user}")
async def delete_history(user: str, request: Request) -> JSONResponse:
    store: ChatHistoryStore = request.app.state.history_store
    try:
        store.clear(user)
    except HistoryError as e:
        logger.error(f"Failed to clear history: {e}")
        return JSONResponse(
            status_code=500,
            content={"status": "error", "message": str(e)},
        )
    return JSONResponse(status_code=200, content={"status": "success"})


def build_transcription(send, language: str) -> TranscriptionProvider:
    if settings.transcription_backend == "deepgram":
        return DeepgramTranscription(language=language)
    return ClientRecognitionRelay(send, language=language)


async def build_synthesis(send) -> PlaybackSpeaker:
    if settings.synthesis_backend == "elevenlabs":
        speaker = ElevenLabsSpeaker(send)
        try:
            await speaker.load_voices()
        except SynthesisError as e:
            logger.warning(f"Could not load ElevenLabs voices: {e}")
        return speaker
    return ClientSpeaker(send)


@app.websocket("/ws/voice")
async def voice_websocket(websocket: WebSocket) -> None:
    """
    WebSocket endpoint for the conversation loop.

    Query parameters: ``user`` (required), ``language``, ``voice``, ``onboarded``.

    Message flow:
    1. Client connects -> session_ready, stored history, optional greeting
    2. mic_toggle -> recognition_start (client relay) or Deepgram session
    3. recognition results / audio chunks -> transcript, wake phrase, silence timer
    4. End of speech -> message (user), message (ai), speak / agent_audio_chunk
    5. playback_complete -> listening again (hands-free) or idle
    """
    params = websocket.query_params
    user_name = (params.get("user") or "").strip()
    session_id = None
    controller = None

    try:
        session_id = await connection_manager.connect(websocket)
        if not user_name:
            await connection_manager.send_error(session_id, "USER_REQUIRED", "Missing user query parameter", recoverable=False)
            return

        logger.info(f"New voice session {session_id} for {user_name}")

        async def send(message: dict):
            await connection_manager.send_message(session_id, message)

        profile = UserProfile(
            name=user_name,
            language_code=params.get("language") or settings.default_language,
            voice_name=params.get("voice") or None,
            has_been_onboarded=params.get("onboarded", "true").lower() != "false",
        )

        async def publish_message(message: Message):
            await send({"type": "message", "data": message.model_dump(mode="json", exclude_none=True)})

        chat = ChatSession(
            user=profile,
            store=websocket.app.state.history_store,
            reply_source=OpenAIClient(),
            wake_phrase=settings.wake_phrase,
            on_message=publish_message,
        )
        transcription = build_transcription(send, chat.language.code)
        synthesis = await build_synthesis(send)

        async def on_state_change(from_state, to_state):
            await connection_manager.send_state_change(
                session_id, from_state.value, to_state.value, controller.turn_state.to_dict()
            )

        controller = TurnController(
            chat=chat,
            transcription=transcription,
            synthesis=synthesis,
            on_state_change=on_state_change,
            on_transcript=lambda text: send({"type": "transcript", "data": {"text": text}}),
            on_activation=lambda: send({"type": "activation_cue", "data": {}}),
            on_notice=lambda code, text: send({"type": "notice", "data": {"code": code, "text": text}}),
        )

        greeting = chat.open()
        await send({
            "type": "history",
            "data": {"messages": [m.model_dump(mode="json", exclude_none=True) for m in chat.messages]},
        })
        if greeting:
            await controller.greet(greeting)

        while True:
            data = await websocket.receive_json()
            message_type = data.get("type", "unknown")
            message_data = data.get("data") or {}

            logger.debug(f"Session {session_id} received: {message_type}")
            connection_manager.update_heartbeat(session_id)

            if message_type == "ping":
                await send({"type": "pong", "data": {}})

            elif message_type == "disconnect":
                logger.info(f"Session {session_id} requested disconnect")
                break

            elif message_type == "mic_toggle":
                await controller.toggle_microphone()

            elif message_type == "hands_free":
                await controller.set_hands_free(bool(message_data.get("enabled")))

            elif message_type == "typing":
                await controller.handle_typing()

            elif message_type == "text_input":
                await controller.send_text(message_data.get("text", ""), image=message_data.get("image"))

            elif message_type == "playback_complete":
                await controller.handle_playback_complete()

            elif message_type == "voices":
                synthesis.set_voices([
                    Voice(name=v.get("name", ""), lang=v.get("lang", ""))
                    for v in message_data.get("voices", [])
                ])

            elif message_type.startswith("recognition_") and isinstance(transcription, ClientRecognitionRelay):
                recognition_session = message_data.get("session")
                if message_type == "recognition_result":
                    await transcription.handle_result(
                        text=message_data.get("text", ""),
                        result_index=int(message_data.get("index", 0)),
                        is_final=bool(message_data.get("is_final")),
                        session=recognition_session,
                    )
                elif message_type == "recognition_end":
                    await transcription.handle_end(session=recognition_session)
                elif message_type == "recognition_error":
                    await transcription.handle_error(message_data.get("error", "unknown"), session=recognition_session)

            elif message_type == "audio_chunk" and isinstance(transcription, DeepgramTranscription):
                audio_bytes = decode_audio_base64(message_data.get("audio", ""))
                if audio_bytes:
                    await transcription.send_audio(audio_bytes)

            else:
                logger.warning(f"Session {session_id} sent unexpected message type: {message_type}")

    except WebSocketDisconnect:
        logger.info(f"Session {session_id} disconnected")

    except Exception as e:
        logger.error(f"Session {session_id} error: {e}", exc_info=True)
        if session_id:
            await connection_manager.send_error(
                session_id,
                code="WS_INTERNAL_ERROR",
                message_text=f"Internal error: {str(e)}",
                recoverable=False
            )

    finally:
        if controller:
            await controller.close()
        if session_id:
            await connection_manager.disconnect(session_id)
            logger.info(f"Session {session_id} cleaned up")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "kindred.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.is_development,
        log_level=settings.log_level.lower(),
    )
