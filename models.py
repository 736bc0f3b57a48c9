"""Database models for heating configuration."""

from sqlalchemy import Column, Integer, String, Boolean, Float, Text, create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

Base = declarative_base()


class AppSettings(Base):
    """App settings (only one row, id=1)."""

    __tablename__ = "app_settings"

    id = Column(Integer, primary_key=True, default=1)
    control_loop_enabled = Column(Boolean, default=True)  # Master kill switch


class DeviceConfig(Base):
    """A Shelly relay channel, optionally carrying a BTHome sensor."""

    __tablename__ = "devices"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    ip = Column(String, nullable=False)
    relay_index = Column(Integer, nullable=False, default=0)
    bt_sensor_id = Column(Integer, nullable=True)


class RoomConfig(Base):
    """A heated room and the radiators it drives."""

    __tablename__ = "rooms"

    room_id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    control_mode = Column(String, nullable=False)  # "schedule" | "thermostat"
    radiator_ids_json = Column(Text, nullable=False)  # JSON array of device ids
    sensor_device_id = Column(String, nullable=True)
    target_temp_c = Column(Float, nullable=True)
    hysteresis_c = Column(Float, nullable=True)
    schedule_json = Column(Text, nullable=True)  # JSON {day: [slot, ...]}


def init_db(database_url: str):
    """Create the engine, make sure tables exist, return (engine, SessionLocal)."""
    engine = create_engine(database_url)
    Base.metadata.create_all(bind=engine)
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    return engine, SessionLocal
