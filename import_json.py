#!/usr/bin/env python3
"""
Import devices.json / rooms.json from the old flat-file backend into the database.

Every record goes through the same validation as the API, so a room pointing
at a device that isn't in devices.json is reported and skipped.

Usage:
    python import_json.py devices.json rooms.json [--replace]
"""

import argparse
import json
from pathlib import Path

import settings
from errors import HeatingError
from models import DeviceConfig, RoomConfig, init_db
from registry import Registry


def read_records(path: Path) -> list[dict]:
    """Load a JSON array file; a missing file counts as empty."""
    if not path.exists():
        print(f"{path} not found, skipping")
        return []
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, list):
        raise ValueError(f"{path} must contain a JSON array")
    return data


def clear_all(session_factory):
    """Delete every room and device."""
    db = session_factory()
    try:
        db.query(RoomConfig).delete()
        db.query(DeviceConfig).delete()
        db.commit()
    finally:
        db.close()


def import_records(registry: Registry, devices: list[dict], rooms: list[dict]) -> tuple[int, int, list[str]]:
    """Import devices first, then rooms. Returns (devices added, rooms added, errors)."""
    errors = []
    device_count = 0
    for record in devices:
        try:
            registry.add_device(record)
            device_count += 1
        except HeatingError as e:
            errors.append(f"device {record.get('id') if isinstance(record, dict) else record!r}: {e.message}")

    room_count = 0
    for record in rooms:
        try:
            registry.add_room(record)
            room_count += 1
        except HeatingError as e:
            errors.append(f"room {record.get('roomId') if isinstance(record, dict) else record!r}: {e.message}")

    return device_count, room_count, errors


def main():
    parser = argparse.ArgumentParser(description="Import legacy devices.json / rooms.json")
    parser.add_argument("devices", type=Path, help="Path to devices.json")
    parser.add_argument("rooms", type=Path, help="Path to rooms.json")
    parser.add_argument("--replace", action="store_true", help="Delete existing devices and rooms first")
    args = parser.parse_args()

    _, SessionLocal = init_db(settings.DATABASE_URL)
    registry = Registry(SessionLocal)

    devices = read_records(args.devices)
    rooms = read_records(args.rooms)
    print(f"Got {len(devices)} devices and {len(rooms)} rooms")

    if args.replace:
        print("Clearing existing configuration...")
        clear_all(SessionLocal)

    device_count, room_count, errors = import_records(registry, devices, rooms)
    print(f"Imported {device_count} devices and {room_count} rooms into {settings.DATABASE_URL}")
    for error in errors:
        print(f"  skipped {error}")


if __name__ == "__main__":
    main()
