import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import AliasChoices, BaseModel, Field

from config import settings
from presence_engine import EntryType, GpsCoordinate, PresenceEngine, PresenceError
from presence_engine.database import get_db_connection

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.app_name, version=settings.app_version)

# --- CORS ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# --- Engine ---
_engine: Optional[PresenceEngine] = None


def get_engine() -> PresenceEngine:
    """Process-wide engine, created on first use."""
    global _engine
    if _engine is None:
        _engine = PresenceEngine(
            settings.database_file,
            config_ttl=settings.config_cache_ttl,
            reader_cache_ttl=settings.reader_cache_ttl,
        )
        logger.info(f"Presence engine initialised on {settings.database_file}")
    return _engine


# --- Security ---
api_key_header = APIKeyHeader(name="X-API-Key")


def get_api_key(api_key: str = Security(api_key_header)):
    """Dependency validating the admin API key."""
    if api_key == settings.api_key:
        return api_key
    raise HTTPException(status_code=403, detail="Could not validate credentials")


def get_current_user_id(x_user_id: Optional[int] = Header(default=None)) -> int:
    """Caller identity, supplied by the upstream auth layer as X-User-Id."""
    if x_user_id is not None:
        return x_user_id
    if settings.default_user_id is not None:
        return settings.default_user_id
    raise HTTPException(status_code=401, detail="Missing X-User-Id header")


# --- Error handling ---
@app.exception_handler(PresenceError)
async def presence_error_handler(request: Request, exc: PresenceError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# --- Models ---
class EntryLogRequest(BaseModel):
    entry_type: EntryType = Field(validation_alias=AliasChoices("entry_type", "entryType"))
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    wifi_ssid: Optional[str] = Field(default=None, validation_alias=AliasChoices("wifi_ssid", "wifiSSID"))
    speed_kmh: Optional[float] = Field(default=None, ge=0, validation_alias=AliasChoices("speed_kmh", "speedKmh"))
    manual_confirm: bool = Field(default=False, validation_alias=AliasChoices("manual_confirm", "manualConfirm"))


class ScoreRequest(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    wifi_ssid: Optional[str] = Field(default=None, validation_alias=AliasChoices("wifi_ssid", "wifiSSID"))
    speed_kmh: Optional[float] = Field(default=None, ge=0, validation_alias=AliasChoices("speed_kmh", "speedKmh"))


class ScanRequest(BaseModel):
    tag_id: str = Field(min_length=1, validation_alias=AliasChoices("tag_id", "tagId"))
    shelf_id: Optional[int] = Field(default=None, validation_alias=AliasChoices("shelf_id", "shelfId"))
    reader_id: Optional[int] = Field(default=None, validation_alias=AliasChoices("reader_id", "readerId"))


class ConfigUpdateModel(BaseModel):
    value: Any


class ReaderUpdateModel(BaseModel):
    shelf_id: Optional[int] = None
    location_description: Optional[str] = None
    is_active: Optional[bool] = None
    firmware_version: Optional[str] = None
    notes: Optional[str] = None


class ReaderCreateModel(BaseModel):
    reader_code: str = Field(validation_alias=AliasChoices("reader_code", "readerCode"))
    shelf_id: Optional[int] = Field(default=None, validation_alias=AliasChoices("shelf_id", "shelfId"))
    location_description: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("location_description", "locationDescription")
    )
    firmware_version: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("firmware_version", "firmwareVersion")
    )
    notes: Optional[str] = None


class ModeModel(BaseModel):
    mode: str
    scan_mode: str
    demo_mode: bool
    production_mode_enabled: bool
    require_reader_mapping: bool
    allow_manual_shelf_selection: bool


# --- Health ---
@app.get("/health")
def health(engine: PresenceEngine = Depends(get_engine)):
    """Liveness check with a quick database query."""
    db_ok = True
    try:
        conn = get_db_connection(engine.db_file)
        conn.execute("SELECT 1")
        conn.close()
    except Exception:
        db_ok = False
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "db": db_ok,
        "config_defaults_active": engine.config.using_defaults,
    }


# --- Entry / exit ---
@app.post("/entry/log")
def log_entry(payload: EntryLogRequest,
              user_id: int = Depends(get_current_user_id),
              engine: PresenceEngine = Depends(get_engine)):
    result = engine.entries.log_entry(
        user_id=user_id,
        entry_type=payload.entry_type,
        coordinate=GpsCoordinate(payload.latitude, payload.longitude),
        wifi_ssid=payload.wifi_ssid,
        speed_kmh=payload.speed_kmh,
        manual_confirm=payload.manual_confirm,
    )
    return result.to_dict()


def _history_payload(engine: PresenceEngine, user_id: int, limit: int, offset: int) -> Dict[str, Any]:
    total, events = engine.entries.history(user_id, limit, offset)
    return {
        "user_id": user_id,
        "total_entries": total,
        "entries": [event.to_dict() for event in events],
    }


@app.get("/entry/history")
def my_history(limit: int = Query(50, ge=1, le=500), offset: int = Query(0, ge=0),
               user_id: int = Depends(get_current_user_id),
               engine: PresenceEngine = Depends(get_engine)):
    return _history_payload(engine, user_id, limit, offset)


@app.get("/entry/history/{user_id}", dependencies=[Depends(get_api_key)])
def user_history(user_id: int, limit: int = Query(50, ge=1, le=500), offset: int = Query(0, ge=0),
                 engine: PresenceEngine = Depends(get_engine)):
    return _history_payload(engine, user_id, limit, offset)


@app.get("/entry/occupancy", dependencies=[Depends(get_api_key)])
def occupancy(engine: PresenceEngine = Depends(get_engine)):
    occupants = engine.entries.current_occupancy()
    return {"current_occupancy": len(occupants), "occupants": occupants}


@app.post("/score")
def score(payload: ScoreRequest, engine: PresenceEngine = Depends(get_engine)):
    """Score a position without logging anything."""
    breakdown = engine.scorer.score(
        GpsCoordinate(payload.latitude, payload.longitude),
        payload.wifi_ssid,
        payload.speed_kmh,
    )
    return breakdown.to_dict()


# --- RFID ---
@app.post("/rfid/scan")
def scan_tag(payload: ScanRequest,
             user_id: int = Depends(get_current_user_id),
             engine: PresenceEngine = Depends(get_engine)):
    result = engine.locations.scan_tag(
        payload.tag_id,
        mode=engine.scan_mode(),
        scanned_by=user_id,
        shelf_id=payload.shelf_id,
        reader_id=payload.reader_id,
    )
    return result.to_dict()


@app.get("/rfid/tags")
def list_tags(is_active: Optional[bool] = None,
              limit: int = Query(50, ge=1, le=500), offset: int = Query(0, ge=0),
              engine: PresenceEngine = Depends(get_engine)):
    total, tags = engine.locations.list_tags(is_active, limit, offset)
    return {"total": total, "tags": tags}


@app.get("/mode", response_model=ModeModel)
def mode(engine: PresenceEngine = Depends(get_engine)):
    return engine.mode_info()


# --- Configuration ---
@app.get("/config")
def get_config(engine: PresenceEngine = Depends(get_engine)):
    return engine.config.get_all()


@app.put("/config/{key}", dependencies=[Depends(get_api_key)])
def set_config(key: str, payload: ConfigUpdateModel, engine: PresenceEngine = Depends(get_engine)):
    value = engine.config.set(key, payload.value)
    return {"key": key, "value": value}


# --- Readers ---
@app.get("/readers")
def list_readers(engine: PresenceEngine = Depends(get_engine)):
    readers: List[Dict[str, Any]] = engine.locations.list_readers()
    return {"count": len(readers), "mode": engine.scan_mode().label, "readers": readers}


@app.get("/readers/health")
def readers_health(engine: PresenceEngine = Depends(get_engine)):
    return {"mode": engine.scan_mode().label, "statistics": engine.locations.reader_health()}


@app.patch("/readers/{reader_id}", dependencies=[Depends(get_api_key)])
def update_reader(reader_id: int, payload: ReaderUpdateModel, engine: PresenceEngine = Depends(get_engine)):
    fields = payload.model_dump(exclude_unset=True)
    reader = engine.locations.update_reader(reader_id, **fields)
    return {"success": True, "reader": reader, "updated_fields": sorted(fields)}


@app.get("/readers/{reader_id}")
def get_reader(reader_id: int, engine: PresenceEngine = Depends(get_engine)):
    return {"success": True, "reader": engine.locations.get_reader(reader_id)}


@app.post("/readers", status_code=201, dependencies=[Depends(get_api_key)])
def register_reader(payload: ReaderCreateModel, engine: PresenceEngine = Depends(get_engine)):
    reader = engine.locations.register_reader(**payload.model_dump())
    return {"success": True, "message": "Reader registered successfully", "reader": reader}


@app.post("/readers/{reader_id}/reset", dependencies=[Depends(get_api_key)])
def reset_reader_stats(reader_id: int, engine: PresenceEngine = Depends(get_engine)):
    reader = engine.locations.reset_reader_stats(reader_id)
    return {"success": True, "message": "Reader statistics reset successfully", "reader": reader}
