from sqlalchemy import (BigInteger, Boolean, Column, Integer, Text, DateTime, ForeignKey, Double,
                        Index, UniqueConstraint)
from database import Base
from sqlalchemy.sql import func, text

# BIGINT ids on PostgreSQL; SQLite only auto-increments INTEGER PRIMARY KEY
BigId = BigInteger().with_variant(Integer, "sqlite")


class Device(Base):
    __tablename__ = "devices"
    id           = Column(BigId, primary_key=True, index=True)
    owner_id     = Column(BigInteger, index=True, nullable=False)
    name         = Column(Text)
    device_class = Column(Text)              # phone / tablet / watch / laptop / gps_tag
    movement_threshold_m = Column(Double)    # per-device override of the class policy
    is_active    = Column(Boolean, default=True, nullable=False)
    last_ping_at = Column(DateTime(timezone=True))   # latest applied recorded_at


class LocationPing(Base):
    __tablename__ = "location_pings"
    __table_args__ = (
        UniqueConstraint("device_id", "recorded_at", name="uq_ping_device_recorded"),
    )
    id           = Column(BigId, primary_key=True, index=True)
    device_id    = Column(BigInteger, ForeignKey("devices.id"), index=True, nullable=False)
    lat          = Column(Double, nullable=False)
    lon          = Column(Double, nullable=False)
    accuracy     = Column(Double)
    altitude     = Column(Double)
    speed        = Column(Double)              # km/h as reported by the device
    heading      = Column(Double)              # degrees from north
    source       = Column(Text, nullable=False, default="gps")
    is_background = Column(Boolean, default=False)
    recorded_at  = Column(DateTime(timezone=True), nullable=False, index=True)
    received_at  = Column(DateTime(timezone=True), nullable=False)
    tz_name      = Column(Text)              # IANA zone the device reported in, if any
    utc_offset_min = Column(Integer)         # offset carried by the timestamp, if any


class MovementSession(Base):
    __tablename__ = "movement_sessions"
    __table_args__ = (
        # at most one open session per device
        Index(
            "uq_session_open_per_device", "device_id", unique=True,
            postgresql_where=text("end_time IS NULL"),
            sqlite_where=text("end_time IS NULL"),
        ),
    )
    id            = Column(BigId, primary_key=True, index=True)
    device_id     = Column(BigInteger, ForeignKey("devices.id"), index=True, nullable=False)
    start_time    = Column(DateTime(timezone=True), nullable=False, index=True)
    end_time      = Column(DateTime(timezone=True))   # NULL while open, frozen once set
    last_ping_at  = Column(DateTime(timezone=True), nullable=False)
    start_lat     = Column(Double, nullable=False)
    start_lon     = Column(Double, nullable=False)
    last_lat      = Column(Double, nullable=False)
    last_lon      = Column(Double, nullable=False)
    distance_m    = Column(Double, default=0, nullable=False)
    avg_speed_kmh = Column(Double, default=0, nullable=False)   # distance-weighted
    max_speed_kmh = Column(Double, default=0, nullable=False)
    ping_count    = Column(Integer, default=0, nullable=False)
    last_speed_kmh = Column(Double)                    # speed at the previous ping, reported or derived
    last_heading  = Column(Double)
    speeding_events           = Column(Integer, default=0, nullable=False)
    hard_braking_events       = Column(Integer, default=0, nullable=False)
    rapid_acceleration_events = Column(Integer, default=0, nullable=False)
    harsh_turning_events      = Column(Integer, default=0, nullable=False)
    safety_score  = Column(Double, default=100, nullable=False)   # 100 minus event deductions


class Geofence(Base):
    __tablename__ = "geofences"
    id             = Column(BigId, primary_key=True, index=True)
    user_id        = Column(BigInteger, index=True, nullable=False)
    device_id      = Column(BigInteger, ForeignKey("devices.id"), index=True)   # NULL → every device of user_id
    name           = Column(Text, nullable=False)
    center_lat     = Column(Double, nullable=False)
    center_lon     = Column(Double, nullable=False)
    radius_m       = Column(Double, nullable=False)
    alert_on_enter = Column(Boolean, default=True, nullable=False)
    alert_on_exit  = Column(Boolean, default=True, nullable=False)
    is_active      = Column(Boolean, default=True, nullable=False)
    created_at     = Column(DateTime(timezone=True), server_default=func.now())
    updated_at     = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class GeofenceEvent(Base):
    __tablename__ = "geofence_events"
    __table_args__ = (
        Index("ix_geofence_event_pair", "device_id", "geofence_id", "id"),
    )
    id          = Column(BigId, primary_key=True, index=True)
    geofence_id = Column(BigInteger, ForeignKey("geofences.id"), nullable=False)
    device_id   = Column(BigInteger, ForeignKey("devices.id"), nullable=False)
    kind        = Column(Text, nullable=False)          # enter / exit
    occurred_at = Column(DateTime(timezone=True), nullable=False)
    ping_id     = Column(BigInteger, ForeignKey("location_pings.id"))
    distance_m  = Column(Double)
    alert       = Column(Boolean, default=False, nullable=False)   # retained for notification
    created_at  = Column(DateTime(timezone=True), server_default=func.now())


class MovementAlert(Base):
    __tablename__ = "movement_alerts"
    id          = Column(BigId, primary_key=True, index=True)
    user_id     = Column(BigInteger, index=True, nullable=False)
    device_id   = Column(BigInteger, ForeignKey("devices.id"), index=True, nullable=False)
    kind        = Column(Text, default="movement", nullable=False)   # movement / theft_protection
    threshold_m = Column(Double, nullable=False)
    window_min  = Column(Double, default=10, nullable=False)
    is_active   = Column(Boolean, default=True, nullable=False)
    created_at  = Column(DateTime(timezone=True), server_default=func.now())


class MovementAlertTrigger(Base):
    __tablename__ = "movement_alert_triggers"
    __table_args__ = (
        Index("ix_movement_trigger_alert", "alert_id", "triggered_at"),
    )
    id                = Column(BigId, primary_key=True, index=True)
    alert_id          = Column(BigInteger, ForeignKey("movement_alerts.id"), nullable=False)
    device_id         = Column(BigInteger, ForeignKey("devices.id"), nullable=False)
    kind              = Column(Text, nullable=False)
    triggered_at      = Column(DateTime(timezone=True), nullable=False)
    ping_id           = Column(BigInteger, ForeignKey("location_pings.id"))
    reference_ping_id = Column(BigInteger, ForeignKey("location_pings.id"))   # earliest ping of the window
    distance_m        = Column(Double, nullable=False)
    created_at        = Column(DateTime(timezone=True), server_default=func.now())
