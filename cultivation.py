"""Recetas de cultivo, fases activas por sala y calendario."""
import logging
from datetime import datetime, timedelta
from typing import Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from auth import get_current_user
from database import DatabaseManager, get_db, parse_iso, to_iso, utcnow
from models import (
    CalendarEventCreate,
    CalendarEventUpdate,
    PhaseAdvance,
    PhaseApply,
    RecipeCreate,
    RecipeUpdate,
)
from realtime import emit_to_user

logger = logging.getLogger("agronex_api.cultivation")

router = APIRouter(tags=["cultivo"])


def build_active_phase(recipe: Dict, index: int, now) -> Dict:
    phase = recipe["phases"][index]
    return {
        "phase_index": index,
        "phase": phase,
        "started_at": to_iso(now),
        "ends_at": to_iso(now + timedelta(hours=phase["duration_hours"])),
    }


# Recetas
@router.get("/api/recipes")
async def list_recipes(
    user_id: str = Depends(get_current_user), db: DatabaseManager = Depends(get_db)
):
    return db.list_recipes(user_id)


@router.post("/api/recipes", status_code=201)
async def create_recipe(
    recipe: RecipeCreate,
    user_id: str = Depends(get_current_user),
    db: DatabaseManager = Depends(get_db),
):
    return db.create_recipe(user_id, recipe.model_dump())


@router.put("/api/recipes/{recipe_id}")
async def update_recipe(
    recipe_id: int,
    changes: RecipeUpdate,
    user_id: str = Depends(get_current_user),
    db: DatabaseManager = Depends(get_db),
):
    fields = changes.model_dump(exclude_unset=True, exclude_none=True)
    if "phases" in fields and not fields["phases"]:
        raise HTTPException(status_code=400, detail="La receta necesita al menos una fase")
    recipe = db.update_recipe(user_id, recipe_id, fields)
    if not recipe:
        raise HTTPException(status_code=404, detail="Receta no encontrada")
    return recipe


@router.delete("/api/recipes/{recipe_id}")
async def delete_recipe(
    recipe_id: int,
    user_id: str = Depends(get_current_user),
    db: DatabaseManager = Depends(get_db),
):
    if not db.delete_recipe(user_id, recipe_id):
        raise HTTPException(status_code=404, detail="Receta no encontrada")
    return {"message": "Receta eliminada"}


# Fases
@router.get("/api/phases/{room_id}")
async def get_room_phase(
    room_id: str,
    user_id: str = Depends(get_current_user),
    db: DatabaseManager = Depends(get_db),
):
    phase = db.get_room_phase(user_id, room_id)
    if not phase:
        raise HTTPException(status_code=404, detail="La sala no tiene una fase activa")
    return phase


@router.post("/api/phases/apply")
async def apply_recipe(
    request: PhaseApply,
    user_id: str = Depends(get_current_user),
    db: DatabaseManager = Depends(get_db),
):
    """Aplica una receta a una sala empezando por su primera fase"""
    recipe = db.get_recipe(user_id, request.recipe_id)
    if not recipe:
        raise HTTPException(status_code=404, detail="Receta no encontrada")

    room_phase = db.upsert_room_phase(
        user_id, request.room_id, recipe, build_active_phase(recipe, 0, utcnow())
    )
    await emit_to_user(
        user_id, "phaseChanged", {"room_id": request.room_id, "status": "applied", "phase": room_phase}
    )
    logger.info(f"Receta {recipe['name']} aplicada en {request.room_id}")
    return room_phase


@router.post("/api/phases/advance")
async def advance_phase(
    request: PhaseAdvance,
    user_id: str = Depends(get_current_user),
    db: DatabaseManager = Depends(get_db),
):
    """Pasa a la siguiente fase; tras la última, la receta se da por completada"""
    room_phase = db.get_room_phase(user_id, request.room_id)
    if not room_phase:
        raise HTTPException(status_code=404, detail="La sala no tiene una fase activa")
    recipe = db.get_recipe(user_id, room_phase["recipe_id"])
    if not recipe:
        raise HTTPException(status_code=404, detail="Receta no encontrada")

    next_index = room_phase["active"]["phase_index"] + 1
    if next_index >= len(recipe["phases"]):
        db.delete_room_phase(user_id, request.room_id)
        await emit_to_user(
            user_id, "phaseChanged", {"room_id": request.room_id, "status": "completed", "phase": None}
        )
        return {"message": "Receta completada", "completed": True}

    room_phase = db.update_room_phase_active(
        user_id, request.room_id, build_active_phase(recipe, next_index, utcnow())
    )
    await emit_to_user(
        user_id, "phaseChanged", {"room_id": request.room_id, "status": "advanced", "phase": room_phase}
    )
    return room_phase


# Calendario
def _reminders(reminders):
    return sorted({r.minutes_before for r in reminders}, reverse=True)


@router.get("/api/calendar")
async def list_events(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int = Query(500, ge=1, le=1000),
    user_id: str = Depends(get_current_user),
    db: DatabaseManager = Depends(get_db),
):
    """Eventos en un rango; por defecto, los próximos 30 días"""
    start_iso = to_iso(start or utcnow())
    end_iso = to_iso(end) if end else to_iso(parse_iso(start_iso) + timedelta(days=30))
    if end_iso < start_iso:
        raise HTTPException(status_code=400, detail="El fin del rango es anterior al inicio")
    return db.list_events(user_id, start_iso, end_iso, limit)


@router.post("/api/calendar", status_code=201)
async def create_event(
    event: CalendarEventCreate,
    user_id: str = Depends(get_current_user),
    db: DatabaseManager = Depends(get_db),
):
    start_at = to_iso(event.start_at)
    end_at = to_iso(event.end_at) if event.end_at else None
    if end_at and end_at < start_at:
        raise HTTPException(status_code=400, detail="end_at no puede ser anterior a start_at")
    return db.create_event(
        user_id,
        {
            "title": event.title,
            "description": event.description,
            "room_id": event.room_id,
            "start_at": start_at,
            "end_at": end_at,
            "reminders": [{"minutes_before": m} for m in _reminders(event.reminders)],
        },
    )


@router.put("/api/calendar/{event_id}")
async def update_event(
    event_id: int,
    changes: CalendarEventUpdate,
    user_id: str = Depends(get_current_user),
    db: DatabaseManager = Depends(get_db),
):
    current = db.get_event(user_id, event_id)
    if not current:
        raise HTTPException(status_code=404, detail="Evento no encontrado")

    fields = changes.model_dump(exclude_unset=True)
    for key in ("title", "description"):
        if key in fields and fields[key] is None:
            fields.pop(key)
    if "start_at" in fields:
        if fields["start_at"] is None:
            raise HTTPException(status_code=400, detail="start_at es obligatorio")
        fields["start_at"] = to_iso(fields["start_at"])
    if fields.get("end_at") is not None:
        fields["end_at"] = to_iso(fields["end_at"])
    if fields.get("end_at") and fields["end_at"] < fields.get("start_at", current["start_at"]):
        raise HTTPException(status_code=400, detail="end_at no puede ser anterior a start_at")
    if "reminders" in fields:
        fields["reminders"] = [
            {"minutes_before": m} for m in _reminders(changes.reminders or [])
        ]

    # Un cambio de hora o de recordatorios vuelve a programar los avisos
    if "start_at" in fields or "reminders" in fields:
        fields["delivered_reminders"] = []
    return db.update_event(user_id, event_id, fields)


@router.delete("/api/calendar/{event_id}")
async def delete_event(
    event_id: int,
    user_id: str = Depends(get_current_user),
    db: DatabaseManager = Depends(get_db),
):
    if not db.delete_event(user_id, event_id):
        raise HTTPException(status_code=404, detail="Evento no encontrado")
    return {"message": "Evento eliminado"}
