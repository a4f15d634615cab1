from fastapi import APIRouter, Depends, HTTPException
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import Response

from auth import get_current_user
from database import DatabaseManager, get_db
from models import ReportExportRequest, ReportScheduleCreate
from reports import aggregate_analytics, run_schedule, to_csv

router = APIRouter(prefix="/api/reports", tags=["reportes"])


@router.post("/export")
async def export_report(
    request: ReportExportRequest,
    user_id: str = Depends(get_current_user),
    db: DatabaseManager = Depends(get_db),
):
    """Exporta los agregados de sensores como CSV"""
    rows = aggregate_analytics(db, user_id, request.timeframe, request.types)
    return Response(
        content=to_csv(rows),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="report-{request.timeframe}.csv"'},
    )


@router.get("/schedules")
async def list_schedules(
    user_id: str = Depends(get_current_user), db: DatabaseManager = Depends(get_db)
):
    return db.list_report_schedules(user_id)


@router.post("/schedules", status_code=201)
async def create_schedule(
    schedule: ReportScheduleCreate,
    user_id: str = Depends(get_current_user),
    db: DatabaseManager = Depends(get_db),
):
    return db.create_report_schedule(user_id, schedule.model_dump())


@router.post("/schedules/{schedule_id}/run")
async def run_schedule_now(
    schedule_id: int,
    user_id: str = Depends(get_current_user),
    db: DatabaseManager = Depends(get_db),
):
    """Ejecuta un reporte programado sin esperar a su hora"""
    schedule = next(
        (s for s in db.list_report_schedules(user_id) if s["id"] == schedule_id), None
    )
    if not schedule:
        raise HTTPException(status_code=404, detail="Reporte programado no encontrado")
    status = await run_in_threadpool(run_schedule, db, schedule)
    return {"status": status}


@router.delete("/schedules/{schedule_id}")
async def delete_schedule(
    schedule_id: int,
    user_id: str = Depends(get_current_user),
    db: DatabaseManager = Depends(get_db),
):
    if not db.delete_report_schedule(user_id, schedule_id):
        raise HTTPException(status_code=404, detail="Reporte programado no encontrado")
    return {"message": "Reporte programado eliminado"}
