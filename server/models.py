"""SQLAlchemy ORM models for performance samples and devices."""

import time
from sqlalchemy import Boolean, Column, Float, Integer, String, Index, UniqueConstraint
from server.database import Base


class PerformanceSample(Base):
    """
    One row per Sample.

    collected_at is the capture time from the payload, received_at the
    ingestion time. Queries sort by collected_at so out-of-order delivery
    after retries is handled. hour_bucket is collected_at // 3600,
    precomputed so hourly grouping stays portable across databases.
    """

    __tablename__ = "performance_metrics"

    id                       = Column(Integer,     primary_key=True, autoincrement=True)
    user_id                  = Column(String(64),  nullable=False)
    device_id                = Column(String(255), nullable=False)
    batch_id                 = Column(String(36),  nullable=True)
    collected_at             = Column(Float,       nullable=False)
    hour_bucket              = Column(Integer,     nullable=False)
    received_at              = Column(Float,       nullable=False, default=time.time)

    cpu_usage                = Column(Float, nullable=False)
    memory_usage             = Column(Float, nullable=False)
    gpu_usage                = Column(Float, nullable=False)
    disk_usage               = Column(Float, nullable=False)
    disk_read_speed          = Column(Float, nullable=False)
    disk_write_speed         = Column(Float, nullable=False)
    network_download         = Column(Float, nullable=False)
    network_upload           = Column(Float, nullable=False)
    water_bottles_equivalent = Column(Float, nullable=False)
    cpu_temperature          = Column(Float, nullable=True)

    __table_args__ = (
        Index("idx_user_device_collected", "user_id", "device_id", "collected_at"),
        Index("idx_user_hour", "user_id", "hour_bucket"),
    )


class Device(Base):
    """One row per device a user has registered."""

    __tablename__ = "devices"

    id          = Column(Integer,     primary_key=True, autoincrement=True)
    user_id     = Column(String(64),  nullable=False)
    device_id   = Column(String(255), nullable=False)
    device_name = Column(String(255), nullable=False)
    device_type = Column(String(20),  nullable=False, default="desktop")
    os          = Column(String(100), nullable=False, server_default="")
    last_sync   = Column(Float,       nullable=False, default=time.time)
    is_active   = Column(Boolean,     nullable=False, default=True)

    __table_args__ = (
        UniqueConstraint("user_id", "device_id", name="uq_user_device"),
    )
