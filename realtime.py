"""Capa Socket.IO: salas por usuario, presencia y chat en vivo."""
import logging
from collections import defaultdict
from typing import Dict, List, Set
from urllib.parse import parse_qs

import jwt
import socketio
from socketio import exceptions as sio_exceptions

from auth import decode_token
from config import settings

logger = logging.getLogger("agronex_api.realtime")

sio = socketio.AsyncServer(
    async_mode="asgi",
    cors_allowed_origins=settings.allowed_origins,
)

# Presencia en memoria: user_id -> sids conectados
online_users: Dict[str, Set[str]] = defaultdict(set)


def user_room(user_id):
    return f"user_{user_id}"


def chat_room(chat_id):
    return f"chat_{chat_id}"


def _token_from(environ, auth):
    if isinstance(auth, dict) and auth.get("token"):
        return auth["token"]
    query = parse_qs(environ.get("QUERY_STRING", ""))
    tokens = query.get("token")
    return tokens[0] if tokens else None


@sio.event
async def connect(sid, environ, auth=None):
    token = _token_from(environ, auth)
    if not token:
        raise sio_exceptions.ConnectionRefusedError("Se requiere token de acceso")
    try:
        user_id = decode_token(token)
    except (jwt.PyJWTError, RuntimeError):
        raise sio_exceptions.ConnectionRefusedError("Token inválido o expirado")

    await sio.save_session(sid, {"user_id": user_id})
    await sio.enter_room(sid, user_room(user_id))

    first_connection = not online_users[user_id]
    online_users[user_id].add(sid)
    if first_connection:
        await sio.emit("presence:update", {"userId": user_id, "online": True})
    logger.info(f"Cliente conectado: {sid} (usuario {user_id})")


@sio.event
async def disconnect(sid):
    session = await sio.get_session(sid)
    user_id = (session or {}).get("user_id")
    if user_id is None:
        return
    sids = online_users.get(user_id, set())
    sids.discard(sid)
    if not sids:
        online_users.pop(user_id, None)
        await sio.emit("presence:update", {"userId": user_id, "online": False})
    logger.info(f"Cliente desconectado: {sid}")


@sio.on("chat:join")
async def chat_join(sid, data):
    chat_id = (data or {}).get("chatId")
    if chat_id:
        await sio.enter_room(sid, chat_room(chat_id))


@sio.on("chat:leave")
async def chat_leave(sid, data):
    chat_id = (data or {}).get("chatId")
    if chat_id:
        await sio.leave_room(sid, chat_room(chat_id))


@sio.on("chat:typing")
async def chat_typing(sid, data):
    data = data or {}
    chat_id = data.get("chatId")
    if not chat_id:
        return
    session = await sio.get_session(sid)
    await sio.emit(
        "chat:typing",
        {"chatId": chat_id, "userId": session.get("user_id"), "typing": bool(data.get("typing"))},
        room=chat_room(chat_id),
        skip_sid=sid,
    )


@sio.on("chat:message")
async def chat_message(sid, data):
    data = data or {}
    chat_id = data.get("chatId")
    if not chat_id or data.get("message") is None:
        return
    await sio.emit("chat:message", data["message"], room=chat_room(chat_id), skip_sid=sid)


# Helpers usados por las rutas y el scheduler

def is_online(user_id):
    return bool(online_users.get(str(user_id)))


async def emit_to_user(user_id, event, data):
    await sio.emit(event, data, room=user_room(user_id))


async def emit_to_chat(chat_id, event, data):
    await sio.emit(event, data, room=chat_room(chat_id))


async def broadcast_sensor_update(user_id, dashboard: Dict):
    await emit_to_user(user_id, "sensorData", dashboard)


async def broadcast_alerts(user_id, alerts: List[Dict]):
    for alert in alerts:
        await emit_to_user(user_id, "newAlert", alert)
