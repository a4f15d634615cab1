import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.concurrency import run_in_threadpool

from auth import get_current_user
from database import DatabaseManager, get_db
from logic import AssistantUnavailableError, assistant
from models import (
    AIChatRequest,
    AnalyzeDataRequest,
    ChatCreate,
    ChatMember,
    ChatRename,
    FarmingTipsRequest,
    MessageCreate,
)
from realtime import emit_to_chat, emit_to_user, is_online

logger = logging.getLogger("agronex_api.chat")

router = APIRouter(tags=["chat"])
ai_router = APIRouter(prefix="/api/chat", tags=["asistente"])


def _chat_for_member(db, chat_id, user_id):
    chat = db.get_chat(chat_id)
    if not chat:
        raise HTTPException(status_code=404, detail="Chat no encontrado")
    if user_id not in chat["members"]:
        raise HTTPException(status_code=403, detail="No perteneces a este chat")
    return chat


def _require_admin(chat, user_id):
    if user_id not in chat["admins"]:
        raise HTTPException(status_code=403, detail="Solo un administrador puede hacer esto")


# Chats
@router.post("/api/chats", status_code=201)
async def create_chat(
    request: ChatCreate,
    user_id: str = Depends(get_current_user),
    db: DatabaseManager = Depends(get_db),
):
    """Crea un chat de grupo o uno a uno (reutiliza el uno a uno si ya existe)"""
    others = [m for m in dict.fromkeys(request.members) if m != user_id]

    if request.type == "one-to-one":
        if len(others) != 1:
            raise HTTPException(status_code=400, detail="Un chat uno a uno necesita exactamente otro miembro")
        existing = db.find_one_to_one_chat(user_id, others[0])
        if existing:
            return existing
        chat = db.create_chat("one-to-one", None, [user_id, others[0]], user_id)
    else:
        if not (request.name or "").strip():
            raise HTTPException(status_code=400, detail="El nombre del grupo es obligatorio")
        chat = db.create_chat(
            "group", request.name.strip(), [user_id] + others, user_id, request.is_ai_group
        )

    for member in others:
        await emit_to_user(member, "chat:created", chat)
    return chat


@router.get("/api/chats")
async def list_chats(
    user_id: str = Depends(get_current_user), db: DatabaseManager = Depends(get_db)
):
    chats = db.list_chats(user_id)
    for chat in chats:
        chat["online_members"] = [m for m in chat["members"] if is_online(m)]
    return chats


@router.get("/api/chats/{chat_id}")
async def get_chat(
    chat_id: int,
    user_id: str = Depends(get_current_user),
    db: DatabaseManager = Depends(get_db),
):
    return _chat_for_member(db, chat_id, user_id)


@router.patch("/api/chats/{chat_id}")
async def rename_chat(
    chat_id: int,
    request: ChatRename,
    user_id: str = Depends(get_current_user),
    db: DatabaseManager = Depends(get_db),
):
    chat = _chat_for_member(db, chat_id, user_id)
    if chat["type"] != "group":
        raise HTTPException(status_code=400, detail="Solo se pueden renombrar grupos")
    _require_admin(chat, user_id)
    chat = db.rename_chat(chat_id, request.name.strip())
    await emit_to_chat(chat_id, "chat:updated", chat)
    return chat


@router.post("/api/chats/{chat_id}/members")
async def add_member(
    chat_id: int,
    request: ChatMember,
    user_id: str = Depends(get_current_user),
    db: DatabaseManager = Depends(get_db),
):
    chat = _chat_for_member(db, chat_id, user_id)
    if chat["type"] != "group":
        raise HTTPException(status_code=400, detail="Solo se pueden añadir miembros a grupos")
    _require_admin(chat, user_id)
    chat = db.add_chat_member(chat_id, request.user_id)
    await emit_to_user(request.user_id, "chat:created", chat)
    return chat


@router.delete("/api/chats/{chat_id}/members/{member_id}")
async def remove_member(
    chat_id: int,
    member_id: str,
    user_id: str = Depends(get_current_user),
    db: DatabaseManager = Depends(get_db),
):
    """Expulsa a un miembro (administradores) o abandona el grupo (uno mismo)"""
    chat = _chat_for_member(db, chat_id, user_id)
    if chat["type"] != "group":
        raise HTTPException(status_code=400, detail="Solo se pueden quitar miembros de grupos")
    if member_id != user_id:
        _require_admin(chat, user_id)
    if member_id not in chat["members"]:
        raise HTTPException(status_code=404, detail="El usuario no es miembro del chat")
    return db.remove_chat_member(chat_id, member_id)


@router.delete("/api/chats/{chat_id}")
async def delete_chat(
    chat_id: int,
    user_id: str = Depends(get_current_user),
    db: DatabaseManager = Depends(get_db),
):
    chat = _chat_for_member(db, chat_id, user_id)
    if chat["type"] == "group":
        _require_admin(chat, user_id)
    db.delete_chat(chat_id)
    await emit_to_chat(chat_id, "chat:deleted", {"chatId": chat_id})
    return {"message": "Chat eliminado"}


# Mensajes
@router.post("/api/messages", status_code=201)
async def send_message(
    request: MessageCreate,
    user_id: str = Depends(get_current_user),
    db: DatabaseManager = Depends(get_db),
):
    chat = _chat_for_member(db, request.chat_id, user_id)
    if not (request.content or "").strip() and not request.media_url:
        raise HTTPException(status_code=400, detail="El mensaje está vacío")

    message = db.create_message(
        request.chat_id,
        user_id,
        request.content,
        request.type,
        request.media_url,
        request.reply_to,
    )
    await emit_to_chat(chat["id"], "chat:message", message)
    return message


@router.get("/api/messages/{chat_id}")
async def list_messages(
    chat_id: int,
    limit: int = Query(50, ge=1, le=200),
    before: Optional[str] = None,
    user_id: str = Depends(get_current_user),
    db: DatabaseManager = Depends(get_db),
):
    _chat_for_member(db, chat_id, user_id)
    return db.list_messages(chat_id, limit, before)


@router.post("/api/messages/{chat_id}/seen")
async def mark_seen(
    chat_id: int,
    user_id: str = Depends(get_current_user),
    db: DatabaseManager = Depends(get_db),
):
    _chat_for_member(db, chat_id, user_id)
    updated = db.mark_messages_seen(chat_id, user_id)
    if updated:
        await emit_to_chat(chat_id, "chat:seen", {"chatId": chat_id, "userId": user_id})
    return {"updated": updated}


@router.delete("/api/messages/{message_id}")
async def delete_message(
    message_id: int,
    user_id: str = Depends(get_current_user),
    db: DatabaseManager = Depends(get_db),
):
    message = db.get_message(message_id)
    if not message:
        raise HTTPException(status_code=404, detail="Mensaje no encontrado")
    if message["sender"] != user_id:
        raise HTTPException(status_code=403, detail="Solo el autor puede borrar el mensaje")
    db.delete_message(message_id)
    await emit_to_chat(message["chat_id"], "chat:messageDeleted", {"messageId": message_id})
    return {"message": "Mensaje eliminado"}


# Asistente de IA
async def _ask_assistant(func, *args, **kwargs):
    if not assistant.available:
        raise HTTPException(status_code=503, detail="Asistente de IA no configurado")
    try:
        return await run_in_threadpool(func, *args, **kwargs)
    except AssistantUnavailableError:
        raise HTTPException(status_code=503, detail="Asistente de IA no configurado")
    except Exception as e:
        logger.error(f"Error en la consulta a Gemini: {e}")
        raise HTTPException(status_code=500, detail="No se pudo generar la respuesta")


@ai_router.post("/ai")
async def ai_chat(request: AIChatRequest, user_id: str = Depends(get_current_user)):
    response = await _ask_assistant(assistant.ask, request.message, user_id, request.context)
    return {"response": response}


@ai_router.post("/analyze-data")
async def analyze_data(request: AnalyzeDataRequest, user_id: str = Depends(get_current_user)):
    analysis = await _ask_assistant(
        assistant.analyze_sensor_data, request.sensor_data, request.timeframe
    )
    return {"analysis": analysis}


@ai_router.post("/farming-tips")
async def farming_tips(request: FarmingTipsRequest, user_id: str = Depends(get_current_user)):
    tips = await _ask_assistant(
        assistant.farming_tips,
        request.crop_type,
        request.growth_stage,
        request.current_conditions,
        request.specific_question,
    )
    return {"tips": tips}
