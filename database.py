import json
import logging
import sqlite3
from datetime import datetime, timezone
from typing import Dict, List, Optional

from config import settings

logger = logging.getLogger("agronex_api.db")


def utcnow():
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """Serializa un datetime como ISO-8601 en UTC (las fechas naive se asumen UTC)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


DEFAULT_NOTIFICATIONS = {
    "email_notifications": True,
    "push_notifications": True,
    "sms_notifications": False,
    "weather_alerts": True,
    "system_updates": True,
    "marketing_emails": False,
    "min_push_severity": "low",
    "min_report_severity": "low",
    "push_quiet_hours_enabled": True,
    "push_quiet_hours_start": "22:00",
    "push_quiet_hours_end": "07:00",
    "report_quiet_hours_enabled": True,
    "report_quiet_hours_start": "22:00",
    "report_quiet_hours_end": "07:00",
}

DEFAULT_SYSTEM = {
    "language": "en",
    "timezone": "UTC",
    "date_format": "MM/DD/YYYY",
    "temperature_unit": "celsius",
    "alert_debounce_seconds": None,
    "auto_save": True,
}

# Columnas JSON y booleanas por tabla, para convertir filas en dicts
JSON_FIELDS = {
    "recipes": ("phases",),
    "room_phases": ("active",),
    "calendar_events": ("reminders", "delivered_reminders"),
    "report_schedules": ("types",),
    "messages": ("seen_by",),
    "trend_analyses": ("details",),
    "alerts": ("based_on",),
}

BOOL_FIELDS = {
    "devices": ("active",),
    "thresholds": ("enabled",),
    "alerts": ("is_read", "is_resolved"),
    "report_schedules": ("enabled",),
    "chats": ("is_ai_group",),
}


class DatabaseManager:
    def __init__(self, db_path=None):
        self.db_path = db_path or settings.database_path
        self.initialize_db()

    def get_connection(self):
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def initialize_db(self):
        """Crea las tablas necesarias si no existen"""
        conn = self.get_connection()
        cursor = conn.cursor()

        # Lecturas de sensores
        cursor.execute("""
        CREATE TABLE IF NOT EXISTS sensor_data (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            device_id TEXT NOT NULL,
            sensor_type TEXT NOT NULL,
            room_id TEXT,
            value REAL NOT NULL,
            unit TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'safe',
            battery_level REAL,
            signal_strength REAL,
            timestamp TEXT NOT NULL,
            UNIQUE (user_id, device_id, sensor_type, timestamp)
        )
        """)
        cursor.execute(
            "CREATE INDEX IF NOT EXISTS idx_sensor_user_ts ON sensor_data (user_id, timestamp)"
        )

        cursor.execute("""
        CREATE TABLE IF NOT EXISTS devices (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT,
            name TEXT NOT NULL,
            device_id TEXT NOT NULL UNIQUE,
            token_hash TEXT UNIQUE,
            token_last4 TEXT,
            active INTEGER NOT NULL DEFAULT 1,
            last_seen_at TEXT,
            location TEXT,
            notes TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """)

        cursor.execute("""
        CREATE TABLE IF NOT EXISTS thresholds (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            name TEXT NOT NULL,
            metric TEXT NOT NULL,
            room_id TEXT,
            min REAL,
            max REAL,
            severity TEXT NOT NULL DEFAULT 'warning',
            enabled INTEGER NOT NULL DEFAULT 1,
            notes TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """)
        # Los umbrales sin sala también son únicos por nombre
        cursor.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS idx_thresholds_unique
            ON thresholds (user_id, metric, COALESCE(room_id, ''), name)
            """
        )

        cursor.execute("""
        CREATE TABLE IF NOT EXISTS alerts (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            type TEXT NOT NULL,
            severity TEXT NOT NULL,
            origin TEXT NOT NULL DEFAULT 'reactive',
            title TEXT NOT NULL,
            message TEXT NOT NULL,
            value REAL,
            unit TEXT,
            threshold_id INTEGER,
            threshold_min REAL,
            threshold_max REAL,
            reading_id INTEGER,
            device_id TEXT,
            room_id TEXT,
            is_read INTEGER NOT NULL DEFAULT 0,
            is_resolved INTEGER NOT NULL DEFAULT 0,
            resolved_at TEXT,
            resolved_by TEXT,
            action_taken TEXT,
            push_status TEXT NOT NULL DEFAULT 'pending',
            risk_category TEXT,
            risk_score REAL,
            confidence REAL,
            window_minutes INTEGER,
            based_on TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """)
        cursor.execute(
            "CREATE INDEX IF NOT EXISTS idx_alerts_debounce ON alerts (user_id, type, room_id, created_at)"
        )

        cursor.execute("""
        CREATE TABLE IF NOT EXISTS user_settings (
            user_id TEXT PRIMARY KEY,
            notifications TEXT NOT NULL,
            system TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """)

        cursor.execute("""
        CREATE TABLE IF NOT EXISTS push_subscriptions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            endpoint TEXT NOT NULL,
            p256dh TEXT,
            auth TEXT,
            created_at TEXT NOT NULL,
            UNIQUE (user_id, endpoint)
        )
        """)

        cursor.execute("""
        CREATE TABLE IF NOT EXISTS report_schedules (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            name TEXT NOT NULL,
            timeframe TEXT NOT NULL DEFAULT '24h',
            types TEXT NOT NULL DEFAULT '[]',
            email TEXT NOT NULL,
            frequency TEXT NOT NULL DEFAULT 'daily',
            hour_local INTEGER NOT NULL DEFAULT 8,
            enabled INTEGER NOT NULL DEFAULT 1,
            last_run_at TEXT,
            created_at TEXT NOT NULL
        )
        """)

        cursor.execute("""
        CREATE TABLE IF NOT EXISTS recipes (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            name TEXT NOT NULL,
            strain TEXT NOT NULL,
            phases TEXT NOT NULL,
            notes TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """)

        cursor.execute("""
        CREATE TABLE IF NOT EXISTS room_phases (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            room_id TEXT NOT NULL,
            recipe_id INTEGER NOT NULL,
            recipe_name TEXT NOT NULL,
            strain TEXT NOT NULL,
            active TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE (user_id, room_id)
        )
        """)

        cursor.execute("""
        CREATE TABLE IF NOT EXISTS calendar_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            title TEXT NOT NULL,
            description TEXT NOT NULL DEFAULT '',
            room_id TEXT,
            start_at TEXT NOT NULL,
            end_at TEXT,
            reminders TEXT NOT NULL DEFAULT '[]',
            delivered_reminders TEXT NOT NULL DEFAULT '[]',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """)

        cursor.execute("""
        CREATE TABLE IF NOT EXISTS chats (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            type TEXT NOT NULL,
            name TEXT,
            created_by TEXT NOT NULL,
            is_ai_group INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """)
        cursor.execute("""
        CREATE TABLE IF NOT EXISTS chat_members (
            chat_id INTEGER NOT NULL,
            user_id TEXT NOT NULL,
            is_admin INTEGER NOT NULL DEFAULT 0,
            PRIMARY KEY (chat_id, user_id)
        )
        """)
        cursor.execute("""
        CREATE TABLE IF NOT EXISTS messages (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            chat_id INTEGER NOT NULL,
            sender TEXT NOT NULL,
            content TEXT,
            type TEXT NOT NULL DEFAULT 'text',
            media_url TEXT,
            reply_to INTEGER,
            seen_by TEXT NOT NULL DEFAULT '[]',
            created_at TEXT NOT NULL
        )
        """)

        # Análisis de tendencias generados por Gemini
        cursor.execute("""
        CREATE TABLE IF NOT EXISTS trend_analyses (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            created_at TEXT NOT NULL,
            period TEXT NOT NULL,
            trend TEXT NOT NULL,
            recommendation TEXT NOT NULL,
            risk_score REAL,
            details TEXT
        )
        """)

        conn.commit()
        conn.close()
        logger.info("Base de datos inicializada correctamente")

    # Utilidades internas

    def _to_dict(self, table, row):
        if row is None:
            return None
        item = dict(row)
        for field in JSON_FIELDS.get(table, ()):
            if field in item:
                item[field] = json.loads(item[field]) if item[field] else None
        for field in BOOL_FIELDS.get(table, ()):
            if field in item and item[field] is not None:
                item[field] = bool(item[field])
        return item

    def _fetchall(self, table, sql, params=()):
        conn = self.get_connection()
        try:
            rows = conn.execute(sql, params).fetchall()
        finally:
            conn.close()
        return [self._to_dict(table, row) for row in rows]

    def _fetchone(self, table, sql, params=()):
        conn = self.get_connection()
        try:
            row = conn.execute(sql, params).fetchone()
        finally:
            conn.close()
        return self._to_dict(table, row)

    def _execute(self, sql, params=()):
        """Ejecuta una escritura y devuelve (lastrowid, rowcount)."""
        conn = self.get_connection()
        try:
            cursor = conn.execute(sql, params)
            conn.commit()
            return cursor.lastrowid, cursor.rowcount
        finally:
            conn.close()

    def _insert(self, table, values: Dict):
        values = {
            k: json.dumps(v) if k in JSON_FIELDS.get(table, ()) else v
            for k, v in values.items()
        }
        columns = ", ".join(values)
        placeholders = ", ".join("?" for _ in values)
        row_id, _ = self._execute(
            f"INSERT INTO {table} ({columns}) VALUES ({placeholders})",
            tuple(values.values()),
        )
        return row_id

    def _update(self, table, where, where_params, fields: Dict, touch=True):
        fields = dict(fields)
        if touch:
            fields["updated_at"] = to_iso(utcnow())
        if not fields:
            return 0
        assignments = ", ".join(f"{k} = ?" for k in fields)
        params = [
            json.dumps(v) if k in JSON_FIELDS.get(table, ()) else v
            for k, v in fields.items()
        ]
        _, rowcount = self._execute(
            f"UPDATE {table} SET {assignments} WHERE {where}",
            tuple(params) + tuple(where_params),
        )
        return rowcount

    def ping(self):
        conn = self.get_connection()
        try:
            conn.execute("SELECT 1").fetchone()
        finally:
            conn.close()
        return True

    # Lecturas de sensores

    def insert_reading(self, reading: Dict) -> Optional[int]:
        """Guarda una lectura; devuelve None si ya existía (mismo tipo y timestamp)."""
        conn = self.get_connection()
        try:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO sensor_data
                (user_id, device_id, sensor_type, room_id, value, unit, status,
                 battery_level, signal_strength, timestamp)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    reading["user_id"],
                    reading["device_id"],
                    reading["sensor_type"],
                    reading.get("room_id"),
                    reading["value"],
                    reading["unit"],
                    reading.get("status", "safe"),
                    reading.get("battery_level"),
                    reading.get("signal_strength"),
                    reading["timestamp"],
                ),
            )
            conn.commit()
            return cursor.lastrowid if cursor.rowcount else None
        finally:
            conn.close()

    def list_readings(
        self,
        user_id,
        sensor_type=None,
        device_id=None,
        start=None,
        end=None,
        limit=50,
        offset=0,
    ):
        where = ["user_id = ?"]
        params = [user_id]
        if sensor_type:
            where.append("sensor_type = ?")
            params.append(sensor_type)
        if device_id:
            where.append("device_id = ?")
            params.append(device_id)
        if start:
            where.append("timestamp >= ?")
            params.append(start)
        if end:
            where.append("timestamp <= ?")
            params.append(end)
        clause = " AND ".join(where)

        items = self._fetchall(
            "sensor_data",
            f"SELECT * FROM sensor_data WHERE {clause} ORDER BY timestamp DESC LIMIT ? OFFSET ?",
            tuple(params) + (limit, offset),
        )
        conn = self.get_connection()
        try:
            total = conn.execute(
                f"SELECT COUNT(*) FROM sensor_data WHERE {clause}", tuple(params)
            ).fetchone()[0]
        finally:
            conn.close()
        return items, total

    def recent_device_readings(self, user_id, device_id, since: str, limit=250):
        return self._fetchall(
            "sensor_data",
            """
            SELECT * FROM sensor_data
            WHERE user_id = ? AND device_id = ? AND timestamp >= ?
            ORDER BY timestamp DESC LIMIT ?
            """,
            (user_id, device_id, since, limit),
        )

    def recent_device_ids(self, user_id, since: str):
        conn = self.get_connection()
        try:
            rows = conn.execute(
                """
                SELECT DISTINCT device_id FROM sensor_data
                WHERE user_id = ? AND timestamp >= ? AND device_id IS NOT NULL
                ORDER BY device_id
                """,
                (user_id, since),
            ).fetchall()
        finally:
            conn.close()
        return [row[0] for row in rows]

    def latest_readings(self, user_id, device_id=None):
        """Última lectura de cada tipo de sensor."""
        params = [user_id]
        device_clause = ""
        if device_id:
            device_clause = "AND device_id = ?"
            params.append(device_id)
        rows = self._fetchall(
            "sensor_data",
            f"""
            SELECT s.* FROM sensor_data s
            JOIN (
                SELECT sensor_type, MAX(timestamp) AS ts
                FROM sensor_data
                WHERE user_id = ? {device_clause}
                GROUP BY sensor_type
            ) latest ON latest.sensor_type = s.sensor_type AND latest.ts = s.timestamp
            WHERE s.user_id = ? {device_clause.replace('device_id', 's.device_id')}
            ORDER BY s.sensor_type, s.id DESC
            """,
            tuple(params) * 2,
        )
        # Dos dispositivos pueden compartir timestamp; nos quedamos con uno por tipo
        latest = {}
        for row in rows:
            latest.setdefault(row["sensor_type"], row)
        return list(latest.values())

    def purge_readings(self, user_id, device_id):
        _, deleted = self._execute(
            "DELETE FROM sensor_data WHERE user_id = ? AND device_id = ?",
            (user_id, device_id),
        )
        return deleted

    def reading_stats(self, user_id, since: str):
        """Estadísticas por tipo de sensor y por hora desde una fecha."""
        conn = self.get_connection()
        cursor = conn.cursor()

        cursor.execute(
            """
            SELECT sensor_type, AVG(value), MIN(value), MAX(value), COUNT(*)
            FROM sensor_data
            WHERE user_id = ? AND timestamp >= ?
            GROUP BY sensor_type
            ORDER BY sensor_type
            """,
            (user_id, since),
        )
        per_sensor = [
            {
                "sensor_type": row[0],
                "avg": round(row[1], 2),
                "min": round(row[2], 2),
                "max": round(row[3], 2),
                "count": row[4],
            }
            for row in cursor.fetchall()
        ]

        # Datos por hora (para gráficos)
        cursor.execute(
            """
            SELECT strftime('%Y-%m-%d %H:00', timestamp) AS hour, sensor_type, AVG(value)
            FROM sensor_data
            WHERE user_id = ? AND timestamp >= ?
            GROUP BY hour, sensor_type
            ORDER BY hour
            """,
            (user_id, since),
        )
        per_hour = [
            {"hour": row[0], "sensor_type": row[1], "avg": round(row[2], 2)}
            for row in cursor.fetchall()
        ]

        cursor.execute("SELECT COUNT(*) FROM sensor_data WHERE user_id = ?", (user_id,))
        total = cursor.fetchone()[0]
        conn.close()

        return {"per_sensor": per_sensor, "per_hour": per_hour, "total_readings": total}

    def aggregate_readings(self, user_id, since: str, types: Optional[List[str]] = None):
        params = [user_id, since]
        type_clause = ""
        if types:
            type_clause = f"AND sensor_type IN ({', '.join('?' for _ in types)})"
            params.extend(types)
        conn = self.get_connection()
        try:
            rows = conn.execute(
                f"""
                SELECT strftime('%Y-%m-%d', timestamp) AS date,
                       CAST(strftime('%H', timestamp) AS INTEGER) AS hour,
                       sensor_type,
                       AVG(value), MIN(value), MAX(value), COUNT(*)
                FROM sensor_data
                WHERE user_id = ? AND timestamp >= ? {type_clause}
                GROUP BY date, hour, sensor_type
                ORDER BY date, hour, sensor_type
                """,
                tuple(params),
            ).fetchall()
        finally:
            conn.close()
        return [
            {
                "date": row[0],
                "hour": row[1],
                "sensor_type": row[2],
                "avg_value": round(row[3], 2),
                "min_value": row[4],
                "max_value": row[5],
                "count": row[6],
            }
            for row in rows
        ]

    # Dispositivos

    def create_device(self, user_id, name, device_id, token_hash, token_last4, location=None, notes=None):
        now = to_iso(utcnow())
        row_id = self._insert(
            "devices",
            {
                "user_id": user_id,
                "name": name,
                "device_id": device_id,
                "token_hash": token_hash,
                "token_last4": token_last4,
                "active": 1,
                "location": location,
                "notes": notes,
                "created_at": now,
                "updated_at": now,
            },
        )
        return self._fetchone("devices", "SELECT * FROM devices WHERE id = ?", (row_id,))

    def list_devices(self, user_id):
        return self._fetchall(
            "devices",
            """
            SELECT id, name, device_id, active, last_seen_at, token_last4, location, notes,
                   created_at, updated_at
            FROM devices WHERE user_id = ? ORDER BY created_at DESC
            """,
            (user_id,),
        )

    def get_device(self, user_id, device_id):
        return self._fetchone(
            "devices",
            "SELECT * FROM devices WHERE user_id = ? AND device_id = ?",
            (user_id, device_id),
        )

    def find_device_by_token_hash(self, token_hash):
        return self._fetchone(
            "devices",
            "SELECT * FROM devices WHERE token_hash = ? AND active = 1",
            (token_hash,),
        )

    def update_device_token(self, user_id, device_id, token_hash, token_last4):
        return self._update(
            "devices",
            "user_id = ? AND device_id = ?",
            (user_id, device_id),
            {"token_hash": token_hash, "token_last4": token_last4},
        )

    def touch_device(self, device_id, seen_at: str):
        return self._update(
            "devices", "device_id = ?", (device_id,), {"last_seen_at": seen_at}, touch=False
        )

    def delete_device(self, user_id, device_id):
        _, deleted = self._execute(
            "DELETE FROM devices WHERE user_id = ? AND device_id = ?", (user_id, device_id)
        )
        return deleted

    # Umbrales

    def list_thresholds(self, user_id, room_id=None, metric=None):
        where = ["user_id = ?"]
        params = [user_id]
        if room_id:
            where.append("room_id = ?")
            params.append(room_id)
        if metric:
            where.append("metric = ?")
            params.append(metric)
        return self._fetchall(
            "thresholds",
            f"SELECT * FROM thresholds WHERE {' AND '.join(where)} ORDER BY updated_at DESC",
            tuple(params),
        )

    def enabled_thresholds(self, user_id, metric):
        return self._fetchall(
            "thresholds",
            "SELECT * FROM thresholds WHERE user_id = ? AND metric = ? AND enabled = 1 ORDER BY id",
            (user_id, metric),
        )

    def get_threshold(self, user_id, threshold_id):
        return self._fetchone(
            "thresholds",
            "SELECT * FROM thresholds WHERE id = ? AND user_id = ?",
            (threshold_id, user_id),
        )

    def create_threshold(self, user_id, data: Dict):
        now = to_iso(utcnow())
        values = dict(data, user_id=user_id, created_at=now, updated_at=now)
        values["enabled"] = 1 if values.get("enabled", True) else 0
        row_id = self._insert("thresholds", values)
        return self.get_threshold(user_id, row_id)

    def update_threshold(self, user_id, threshold_id, fields: Dict):
        if "enabled" in fields:
            fields["enabled"] = 1 if fields["enabled"] else 0
        if not self._update("thresholds", "id = ? AND user_id = ?", (threshold_id, user_id), fields):
            return None
        return self.get_threshold(user_id, threshold_id)

    def delete_threshold(self, user_id, threshold_id):
        _, deleted = self._execute(
            "DELETE FROM thresholds WHERE id = ? AND user_id = ?", (threshold_id, user_id)
        )
        return deleted

    # Alertas

    def create_alert(self, alert: Dict):
        now = alert.get("created_at") or to_iso(utcnow())
        values = dict(alert, created_at=now, updated_at=now)
        row_id = self._insert("alerts", values)
        return self._fetchone("alerts", "SELECT * FROM alerts WHERE id = ?", (row_id,))

    def find_recent_alert(self, user_id, alert_type, room_id, since: str):
        """Alerta más reciente del mismo tipo y sala creada desde `since`."""
        return self._fetchone(
            "alerts",
            """
            SELECT * FROM alerts
            WHERE user_id = ? AND type = ? AND room_id IS ? AND created_at >= ?
              AND origin != 'predictive'
            ORDER BY created_at DESC LIMIT 1
            """,
            (user_id, alert_type, room_id, since),
        )

    def find_recent_predictive_alert(self, user_id, device_id, risk_category, since: str):
        """Alerta predictiva abierta de la misma categoría y dispositivo desde `since`."""
        return self._fetchone(
            "alerts",
            """
            SELECT * FROM alerts
            WHERE user_id = ? AND device_id IS ? AND origin = 'predictive'
              AND risk_category = ? AND is_resolved = 0 AND created_at >= ?
            ORDER BY created_at DESC LIMIT 1
            """,
            (user_id, device_id, risk_category, since),
        )

    def list_alerts(
        self, user_id, severity=None, alert_type=None, is_read=None, is_resolved=None, limit=50, offset=0, origin=None
    ):
        where = ["user_id = ?"]
        params = [user_id]
        if severity:
            where.append("severity = ?")
            params.append(severity)
        if alert_type:
            where.append("type = ?")
            params.append(alert_type)
        if origin:
            where.append("origin = ?")
            params.append(origin)
        if is_read is not None:
            where.append("is_read = ?")
            params.append(1 if is_read else 0)
        if is_resolved is not None:
            where.append("is_resolved = ?")
            params.append(1 if is_resolved else 0)
        clause = " AND ".join(where)

        items = self._fetchall(
            "alerts",
            f"SELECT * FROM alerts WHERE {clause} ORDER BY created_at DESC LIMIT ? OFFSET ?",
            tuple(params) + (limit, offset),
        )
        conn = self.get_connection()
        try:
            total = conn.execute(
                f"SELECT COUNT(*) FROM alerts WHERE {clause}", tuple(params)
            ).fetchone()[0]
        finally:
            conn.close()
        return items, total

    def get_alert(self, user_id, alert_id):
        return self._fetchone(
            "alerts", "SELECT * FROM alerts WHERE id = ? AND user_id = ?", (alert_id, user_id)
        )

    def update_alert(self, user_id, alert_id, fields: Dict):
        for key in ("is_read", "is_resolved"):
            if key in fields:
                fields[key] = 1 if fields[key] else 0
        if not self._update("alerts", "id = ? AND user_id = ?", (alert_id, user_id), fields):
            return None
        return self.get_alert(user_id, alert_id)

    def delete_alert(self, user_id, alert_id):
        _, deleted = self._execute(
            "DELETE FROM alerts WHERE id = ? AND user_id = ?", (alert_id, user_id)
        )
        return deleted

    def mark_all_alerts_read(self, user_id):
        return self._update("alerts", "user_id = ? AND is_read = 0", (user_id,), {"is_read": 1})

    def clear_resolved_alerts(self, user_id):
        _, deleted = self._execute(
            "DELETE FROM alerts WHERE user_id = ? AND is_resolved = 1", (user_id,)
        )
        return deleted

    def alert_summary(self, user_id):
        conn = self.get_connection()
        cursor = conn.cursor()
        cursor.execute(
            """
            SELECT severity, COUNT(*) FROM alerts
            WHERE user_id = ? AND is_resolved = 0
            GROUP BY severity
            """,
            (user_id,),
        )
        by_severity = {row[0]: row[1] for row in cursor.fetchall()}
        cursor.execute(
            "SELECT COUNT(*) FROM alerts WHERE user_id = ? AND is_read = 0", (user_id,)
        )
        unread = cursor.fetchone()[0]
        cursor.execute("SELECT COUNT(*) FROM alerts WHERE user_id = ?", (user_id,))
        total = cursor.fetchone()[0]
        conn.close()
        return {"total": total, "unread": unread, "open_by_severity": by_severity}

    def set_push_status(self, alert_id, status):
        return self._update("alerts", "id = ?", (alert_id,), {"push_status": status})

    def deferred_push_alerts(self, since: str):
        return self._fetchall(
            "alerts",
            """
            SELECT * FROM alerts
            WHERE push_status = 'deferred' AND is_resolved = 0 AND created_at >= ?
            ORDER BY user_id, created_at
            """,
            (since,),
        )

    def alert_severities_since(self, user_id, since: str):
        conn = self.get_connection()
        try:
            rows = conn.execute(
                "SELECT severity FROM alerts WHERE user_id = ? AND created_at >= ?",
                (user_id, since),
            ).fetchall()
        finally:
            conn.close()
        return [row[0] for row in rows]

    # Ajustes de usuario

    def get_user_settings(self, user_id):
        """Devuelve los ajustes del usuario, creándolos con valores por defecto."""
        row = self._fetchone(
            "user_settings", "SELECT * FROM user_settings WHERE user_id = ?", (user_id,)
        )
        if row is None:
            self._execute(
                """
                INSERT OR IGNORE INTO user_settings (user_id, notifications, system, updated_at)
                VALUES (?, ?, ?, ?)
                """,
                (user_id, json.dumps(DEFAULT_NOTIFICATIONS), json.dumps(DEFAULT_SYSTEM), to_iso(utcnow())),
            )
            return {
                "notifications": dict(DEFAULT_NOTIFICATIONS),
                "system": dict(DEFAULT_SYSTEM),
            }
        return {
            "notifications": {**DEFAULT_NOTIFICATIONS, **json.loads(row["notifications"])},
            "system": {**DEFAULT_SYSTEM, **json.loads(row["system"])},
        }

    def update_user_settings(self, user_id, section, values: Dict):
        current = self.get_user_settings(user_id)
        current[section] = {**current[section], **values}
        self._execute(
            f"UPDATE user_settings SET {section} = ?, updated_at = ? WHERE user_id = ?",
            (json.dumps(current[section]), to_iso(utcnow()), user_id),
        )
        return current

    # Suscripciones push

    def upsert_subscription(self, user_id, endpoint, p256dh=None, auth=None):
        self._execute(
            """
            INSERT INTO push_subscriptions (user_id, endpoint, p256dh, auth, created_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (user_id, endpoint) DO UPDATE SET p256dh = excluded.p256dh, auth = excluded.auth
            """,
            (user_id, endpoint, p256dh, auth, to_iso(utcnow())),
        )

    def delete_subscription(self, user_id, endpoint):
        _, deleted = self._execute(
            "DELETE FROM push_subscriptions WHERE user_id = ? AND endpoint = ?",
            (user_id, endpoint),
        )
        return deleted

    def delete_subscription_by_id(self, subscription_id):
        _, deleted = self._execute(
            "DELETE FROM push_subscriptions WHERE id = ?", (subscription_id,)
        )
        return deleted

    def list_subscriptions(self, user_id):
        return self._fetchall(
            "push_subscriptions",
            "SELECT * FROM push_subscriptions WHERE user_id = ? ORDER BY id",
            (user_id,),
        )

    def sample_subscriptions(self, limit=200):
        return self._fetchall(
            "push_subscriptions",
            "SELECT * FROM push_subscriptions ORDER BY id LIMIT ?",
            (limit,),
        )

    # Reportes programados

    def list_report_schedules(self, user_id):
        return self._fetchall(
            "report_schedules",
            "SELECT * FROM report_schedules WHERE user_id = ? ORDER BY created_at DESC",
            (user_id,),
        )

    def create_report_schedule(self, user_id, data: Dict):
        values = dict(data, user_id=user_id, created_at=to_iso(utcnow()))
        values["enabled"] = 1 if values.get("enabled", True) else 0
        row_id = self._insert("report_schedules", values)
        return self._fetchone(
            "report_schedules", "SELECT * FROM report_schedules WHERE id = ?", (row_id,)
        )

    def delete_report_schedule(self, user_id, schedule_id):
        _, deleted = self._execute(
            "DELETE FROM report_schedules WHERE id = ? AND user_id = ?", (schedule_id, user_id)
        )
        return deleted

    def enabled_report_schedules(self):
        return self._fetchall(
            "report_schedules", "SELECT * FROM report_schedules WHERE enabled = 1 ORDER BY id"
        )

    def mark_schedule_run(self, schedule_id, ran_at: str):
        return self._update(
            "report_schedules", "id = ?", (schedule_id,), {"last_run_at": ran_at}, touch=False
        )

    # Recetas

    def list_recipes(self, user_id):
        return self._fetchall(
            "recipes", "SELECT * FROM recipes WHERE user_id = ? ORDER BY updated_at DESC", (user_id,)
        )

    def get_recipe(self, user_id, recipe_id):
        return self._fetchone(
            "recipes", "SELECT * FROM recipes WHERE id = ? AND user_id = ?", (recipe_id, user_id)
        )

    def create_recipe(self, user_id, data: Dict):
        now = to_iso(utcnow())
        row_id = self._insert("recipes", dict(data, user_id=user_id, created_at=now, updated_at=now))
        return self.get_recipe(user_id, row_id)

    def update_recipe(self, user_id, recipe_id, fields: Dict):
        if not self._update("recipes", "id = ? AND user_id = ?", (recipe_id, user_id), fields):
            return None
        return self.get_recipe(user_id, recipe_id)

    def delete_recipe(self, user_id, recipe_id):
        _, deleted = self._execute(
            "DELETE FROM recipes WHERE id = ? AND user_id = ?", (recipe_id, user_id)
        )
        return deleted

    # Fases activas por sala

    def get_room_phase(self, user_id, room_id):
        return self._fetchone(
            "room_phases",
            "SELECT * FROM room_phases WHERE user_id = ? AND room_id = ?",
            (user_id, room_id),
        )

    def upsert_room_phase(self, user_id, room_id, recipe, active: Dict):
        now = to_iso(utcnow())
        self._execute(
            """
            INSERT INTO room_phases
            (user_id, room_id, recipe_id, recipe_name, strain, active, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (user_id, room_id) DO UPDATE SET
                recipe_id = excluded.recipe_id,
                recipe_name = excluded.recipe_name,
                strain = excluded.strain,
                active = excluded.active,
                updated_at = excluded.updated_at
            """,
            (user_id, room_id, recipe["id"], recipe["name"], recipe["strain"], json.dumps(active), now, now),
        )
        return self.get_room_phase(user_id, room_id)

    def update_room_phase_active(self, user_id, room_id, active: Dict):
        self._update(
            "room_phases", "user_id = ? AND room_id = ?", (user_id, room_id), {"active": active}
        )
        return self.get_room_phase(user_id, room_id)

    def delete_room_phase(self, user_id, room_id):
        _, deleted = self._execute(
            "DELETE FROM room_phases WHERE user_id = ? AND room_id = ?", (user_id, room_id)
        )
        return deleted

    # Calendario

    def list_events(self, user_id, start: str, end: str, limit=500):
        return self._fetchall(
            "calendar_events",
            """
            SELECT * FROM calendar_events
            WHERE user_id = ? AND start_at >= ? AND start_at <= ?
            ORDER BY start_at LIMIT ?
            """,
            (user_id, start, end, limit),
        )

    def get_event(self, user_id, event_id):
        return self._fetchone(
            "calendar_events",
            "SELECT * FROM calendar_events WHERE id = ? AND user_id = ?",
            (event_id, user_id),
        )

    def create_event(self, user_id, data: Dict):
        now = to_iso(utcnow())
        values = dict(data, user_id=user_id, delivered_reminders=[], created_at=now, updated_at=now)
        row_id = self._insert("calendar_events", values)
        return self.get_event(user_id, row_id)

    def update_event(self, user_id, event_id, fields: Dict):
        if not self._update("calendar_events", "id = ? AND user_id = ?", (event_id, user_id), fields):
            return None
        return self.get_event(user_id, event_id)

    def delete_event(self, user_id, event_id):
        _, deleted = self._execute(
            "DELETE FROM calendar_events WHERE id = ? AND user_id = ?", (event_id, user_id)
        )
        return deleted

    def events_with_reminders(self, start: str, end: str, limit=1000):
        return self._fetchall(
            "calendar_events",
            """
            SELECT * FROM calendar_events
            WHERE start_at >= ? AND start_at <= ? AND reminders != '[]'
            ORDER BY start_at LIMIT ?
            """,
            (start, end, limit),
        )

    def mark_reminder_delivered(self, event_id, minutes_before):
        event = self._fetchone(
            "calendar_events", "SELECT * FROM calendar_events WHERE id = ?", (event_id,)
        )
        if event is None:
            return 0
        delivered = event["delivered_reminders"] or []
        if minutes_before in delivered:
            return 0
        delivered.append(minutes_before)
        return self._update(
            "calendar_events", "id = ?", (event_id,), {"delivered_reminders": delivered}, touch=False
        )

    # Chats y mensajes

    def create_chat(self, chat_type, name, members: List[str], created_by, is_ai_group=False):
        now = to_iso(utcnow())
        conn = self.get_connection()
        try:
            cursor = conn.execute(
                """
                INSERT INTO chats (type, name, created_by, is_ai_group, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (chat_type, name, created_by, 1 if is_ai_group else 0, now, now),
            )
            chat_id = cursor.lastrowid
            conn.executemany(
                "INSERT OR IGNORE INTO chat_members (chat_id, user_id, is_admin) VALUES (?, ?, ?)",
                [(chat_id, member, 1 if member == created_by else 0) for member in members],
            )
            conn.commit()
        finally:
            conn.close()
        return self.get_chat(chat_id)

    def get_chat(self, chat_id):
        chat = self._fetchone("chats", "SELECT * FROM chats WHERE id = ?", (chat_id,))
        if chat is None:
            return None
        conn = self.get_connection()
        try:
            rows = conn.execute(
                "SELECT user_id, is_admin FROM chat_members WHERE chat_id = ? ORDER BY user_id",
                (chat_id,),
            ).fetchall()
        finally:
            conn.close()
        chat["members"] = [row[0] for row in rows]
        chat["admins"] = [row[0] for row in rows if row[1]]
        return chat

    def find_one_to_one_chat(self, user_a, user_b):
        conn = self.get_connection()
        try:
            row = conn.execute(
                """
                SELECT c.id FROM chats c
                WHERE c.type = 'one-to-one'
                  AND EXISTS (SELECT 1 FROM chat_members m WHERE m.chat_id = c.id AND m.user_id = ?)
                  AND EXISTS (SELECT 1 FROM chat_members m WHERE m.chat_id = c.id AND m.user_id = ?)
                  AND (SELECT COUNT(*) FROM chat_members m WHERE m.chat_id = c.id) = 2
                LIMIT 1
                """,
                (user_a, user_b),
            ).fetchone()
        finally:
            conn.close()
        return self.get_chat(row[0]) if row else None

    def is_chat_member(self, chat_id, user_id):
        conn = self.get_connection()
        try:
            row = conn.execute(
                "SELECT 1 FROM chat_members WHERE chat_id = ? AND user_id = ?", (chat_id, user_id)
            ).fetchone()
        finally:
            conn.close()
        return row is not None

    def list_chats(self, user_id):
        """Chats del usuario con el último mensaje y el número de no leídos."""
        chats = self._fetchall(
            "chats",
            """
            SELECT c.* FROM chats c
            JOIN chat_members m ON m.chat_id = c.id
            WHERE m.user_id = ?
            ORDER BY c.updated_at DESC
            """,
            (user_id,),
        )
        result = []
        for chat in chats:
            full = self.get_chat(chat["id"])
            messages = self._fetchall(
                "messages",
                "SELECT * FROM messages WHERE chat_id = ? ORDER BY created_at DESC",
                (chat["id"],),
            )
            full["last_message"] = messages[0] if messages else None
            full["unread_count"] = sum(
                1
                for m in messages
                if m["sender"] != user_id and user_id not in (m["seen_by"] or [])
            )
            result.append(full)
        return result

    def add_chat_member(self, chat_id, user_id):
        self._execute(
            "INSERT OR IGNORE INTO chat_members (chat_id, user_id, is_admin) VALUES (?, ?, 0)",
            (chat_id, user_id),
        )
        self._update("chats", "id = ?", (chat_id,), {})
        return self.get_chat(chat_id)

    def remove_chat_member(self, chat_id, user_id):
        self._execute(
            "DELETE FROM chat_members WHERE chat_id = ? AND user_id = ?", (chat_id, user_id)
        )
        self._update("chats", "id = ?", (chat_id,), {})
        return self.get_chat(chat_id)

    def rename_chat(self, chat_id, name):
        self._update("chats", "id = ?", (chat_id,), {"name": name})
        return self.get_chat(chat_id)

    def delete_chat(self, chat_id):
        conn = self.get_connection()
        try:
            conn.execute("DELETE FROM messages WHERE chat_id = ?", (chat_id,))
            conn.execute("DELETE FROM chat_members WHERE chat_id = ?", (chat_id,))
            cursor = conn.execute("DELETE FROM chats WHERE id = ?", (chat_id,))
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    def create_message(self, chat_id, sender, content, message_type="text", media_url=None, reply_to=None):
        now = to_iso(utcnow())
        row_id = self._insert(
            "messages",
            {
                "chat_id": chat_id,
                "sender": sender,
                "content": content,
                "type": message_type,
                "media_url": media_url,
                "reply_to": reply_to,
                "seen_by": [sender],
                "created_at": now,
            },
        )
        self._update("chats", "id = ?", (chat_id,), {})
        return self.get_message(row_id)

    def get_message(self, message_id):
        return self._fetchone("messages", "SELECT * FROM messages WHERE id = ?", (message_id,))

    def list_messages(self, chat_id, limit=50, before: Optional[str] = None):
        params = [chat_id]
        before_clause = ""
        if before:
            before_clause = "AND created_at < ?"
            params.append(before)
        items = self._fetchall(
            "messages",
            f"""
            SELECT * FROM messages WHERE chat_id = ? {before_clause}
            ORDER BY created_at DESC LIMIT ?
            """,
            tuple(params) + (limit,),
        )
        return list(reversed(items))

    def mark_messages_seen(self, chat_id, user_id):
        messages = self._fetchall(
            "messages", "SELECT * FROM messages WHERE chat_id = ?", (chat_id,)
        )
        updated = 0
        for message in messages:
            seen_by = message["seen_by"] or []
            if user_id in seen_by:
                continue
            seen_by.append(user_id)
            updated += self._update(
                "messages", "id = ?", (message["id"],), {"seen_by": seen_by}, touch=False
            )
        return updated

    def delete_message(self, message_id):
        _, deleted = self._execute("DELETE FROM messages WHERE id = ?", (message_id,))
        return deleted

    # Análisis de tendencias

    def save_trend_analysis(self, user_id, analysis: Dict):
        """Guarda un análisis de tendencia generado por Gemini"""
        return self._insert(
            "trend_analyses",
            {
                "user_id": user_id,
                "created_at": to_iso(utcnow()),
                "period": analysis.get("period", "últimas 24 horas"),
                "trend": analysis.get("trend", "desconocida"),
                "recommendation": analysis.get("recommendation", "No hay recomendaciones"),
                "risk_score": analysis.get("risk_score", 0.0),
                "details": analysis.get("details", {}),
            },
        )

    def latest_trend_analyses(self, user_id, limit=5):
        """Obtiene los análisis de tendencias más recientes."""
        return self._fetchall(
            "trend_analyses",
            "SELECT * FROM trend_analyses WHERE user_id = ? ORDER BY created_at DESC LIMIT ?",
            (user_id, limit),
        )


db_manager: Optional[DatabaseManager] = None


def get_db() -> DatabaseManager:
    """Dependencia de FastAPI: devuelve el gestor de base de datos compartido."""
    global db_manager
    if db_manager is None:
        db_manager = DatabaseManager()
    return db_manager
