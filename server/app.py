"""Flask API server storing performance samples and serving history."""

import json
import math
import os
import time
from datetime import datetime, timezone
from functools import wraps
from typing import Dict, Optional

from flask import Flask, current_app, g, jsonify, request
from pydantic import ValidationError
from sqlalchemy import asc, desc, func
from sqlalchemy.exc import IntegrityError

from collectors.base_data_collector import Sample
from server.database import Database
from server.models import Device, PerformanceSample
from sharedUtils.logger.logger import get_logger
from sharedUtils.persistence.base_gateway import AGGREGATE_METRICS

logger = get_logger(__name__)

DEFAULT_QUERY_LIMIT = 100   # Rows returned by GET /api/performance when no limit param is given
MAX_QUERY_LIMIT = 1000
DEFAULT_WINDOW_HOURS = 24.0
SECONDS_PER_HOUR = 3600

SAMPLE_COLUMNS = (
    "cpu_usage", "memory_usage", "gpu_usage", "disk_usage",
    "disk_read_speed", "disk_write_speed", "network_download", "network_upload",
    "water_bottles_equivalent", "cpu_temperature",
)


def require_bearer_token(f):
    """
    Decorator resolving the bearer token to a user.

    The user_id lands on flask.g.user_id. Returns 401 if the token is
    missing or unknown.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        header = request.headers.get('Authorization', '')
        if not header.startswith('Bearer '):
            logger.warning("Request rejected: missing bearer token from %s", request.remote_addr)
            return jsonify({'error': 'Access token required'}), 401

        user_id = current_app.config['API_TOKENS'].get(header[len('Bearer '):])
        if user_id is None:
            logger.warning("Request rejected: invalid token from %s", request.remote_addr)
            return jsonify({'error': 'Invalid token'}), 401

        g.user_id = user_id
        return f(*args, **kwargs)

    return decorated_function


def _parse_instant(value: Optional[str]) -> Optional[float]:
    """Accept an ISO-8601 string or a Unix timestamp; return epoch seconds."""
    if value is None or value == "":
        return None
    try:
        epoch = float(value)
    except ValueError:
        pass
    else:
        if not math.isfinite(epoch):
            raise ValueError(f"{value!r} is not a finite timestamp")
        return epoch
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def _iso(epoch: float) -> str:
    return datetime.fromtimestamp(epoch, tz=timezone.utc).isoformat()


def _row_to_dict(row: PerformanceSample) -> dict:
    data = {"device_id": row.device_id, "timestamp": _iso(row.collected_at)}
    for column in SAMPLE_COLUMNS:
        data[column] = getattr(row, column)
    return data


def _window_params():
    device_id = request.args.get('device_id')
    hours = float(request.args.get('hours', DEFAULT_WINDOW_HOURS))
    if not math.isfinite(hours) or hours <= 0:
        raise ValueError("hours must be a positive number")
    return device_id, hours, time.time() - hours * SECONDS_PER_HOUR


def create_app(database: Database, api_tokens: Dict[str, str]) -> Flask:
    """
    Build the Flask app around an explicit database handle.

    Args:
        database: Database handle; tables are created if missing
        api_tokens: Bearer token -> user_id
    """
    app = Flask(__name__)
    app.config['API_TOKENS'] = dict(api_tokens)
    app.extensions['telemetry_db'] = database

    database.create_all()
    logger.info("Database tables verified/created")

    @app.route('/api/performance', methods=['POST'])
    @require_bearer_token
    def post_performance():
        """
        Store a batch of samples for the authenticated user.

        Body: {"batch_id": "uuid", "reason": "size", "samples": [Sample, ...]}
        The whole batch is validated before anything is written, so a batch
        is stored completely or not at all.
        """
        data = request.get_json(silent=True)
        if not data or not isinstance(data.get("samples"), list) or not data["samples"]:
            return jsonify({"error": "Body must contain a non-empty 'samples' list"}), 400

        try:
            samples = [Sample.model_validate(item) for item in data["samples"]]
        except ValidationError as e:
            logger.warning("POST /api/performance: invalid batch from user %s", g.user_id)
            return jsonify({"error": "Invalid sample", "details": json.loads(e.json())}), 422

        batch_id = data.get("batch_id")
        received_at = time.time()
        try:
            with database.session() as db:
                for sample in samples:
                    collected_at = sample.timestamp.timestamp()
                    db.add(PerformanceSample(
                        user_id=g.user_id,
                        batch_id=batch_id,
                        device_id=sample.device_id,
                        collected_at=collected_at,
                        hour_bucket=int(collected_at // SECONDS_PER_HOUR),
                        received_at=received_at,
                        **{column: getattr(sample, column) for column in SAMPLE_COLUMNS},
                    ))
        except Exception as e:
            logger.error("POST /api/performance: database error: %s", str(e))
            return jsonify({"error": "Failed to store samples"}), 500

        logger.info("Stored batch %s from user=%s (%d samples)", batch_id, g.user_id, len(samples))
        return jsonify({"status": "success", "batch_id": batch_id, "inserted": len(samples)}), 201

    @app.route('/api/performance', methods=['GET'])
    @require_bearer_token
    def get_performance():
        """
        Retrieve samples of the authenticated user, newest first.

        Query parameters:
            device_id (optional): Equality filter on the device
            start, end (optional): ISO-8601 or Unix timestamps, inclusive
            limit     (optional): Max rows, default 100, capped at 1000
        """
        try:
            device_id = request.args.get('device_id')
            start = _parse_instant(request.args.get('start'))
            end = _parse_instant(request.args.get('end'))
            limit = int(request.args.get('limit', DEFAULT_QUERY_LIMIT))
        except (ValueError, TypeError) as e:
            return jsonify({"error": f"Invalid query parameter: {e}"}), 400
        if limit < 1:
            return jsonify({"error": "limit must be a positive integer"}), 400
        limit = min(limit, MAX_QUERY_LIMIT)

        try:
            with database.session() as db:
                query = db.query(PerformanceSample).filter(PerformanceSample.user_id == g.user_id)
                if device_id:
                    query = query.filter(PerformanceSample.device_id == device_id)
                if start is not None:
                    query = query.filter(PerformanceSample.collected_at >= start)
                if end is not None:
                    query = query.filter(PerformanceSample.collected_at <= end)

                rows = query.order_by(desc(PerformanceSample.collected_at)).limit(limit).all()
                result = [_row_to_dict(row) for row in rows]
        except Exception as e:
            logger.error("GET /api/performance: database error: %s", str(e))
            return jsonify({"error": "Failed to retrieve samples"}), 500

        logger.info("GET /api/performance: returned %d samples (user=%s, device=%s)",
                    len(result), g.user_id, device_id)
        return jsonify({"status": "success", "count": len(result), "samples": result}), 200

    @app.route('/api/performance/stats', methods=['GET'])
    @require_bearer_token
    def get_performance_stats():
        """Count, average, min and max per metric over the trailing window."""
        try:
            device_id, hours, since = _window_params()
        except (ValueError, TypeError) as e:
            return jsonify({"error": f"Invalid query parameter: {e}"}), 400

        columns = [func.count(PerformanceSample.id), func.sum(PerformanceSample.water_bottles_equivalent)]
        for metric in AGGREGATE_METRICS:
            column = getattr(PerformanceSample, metric)
            columns += [func.avg(column), func.min(column), func.max(column)]

        try:
            with database.session() as db:
                query = db.query(*columns).filter(
                    PerformanceSample.user_id == g.user_id,
                    PerformanceSample.collected_at >= since,
                )
                if device_id:
                    query = query.filter(PerformanceSample.device_id == device_id)
                row = query.one()
        except Exception as e:
            logger.error("GET /api/performance/stats: database error: %s", str(e))
            return jsonify({"error": "Failed to compute statistics"}), 500

        count, bottles, *values = row
        metrics = {}
        for i, metric in enumerate(AGGREGATE_METRICS):
            avg, low, high = values[i * 3:i * 3 + 3]
            metrics[metric] = {
                "avg": float(avg) if avg is not None else None,
                "min": low,
                "max": high,
            }

        stats = {
            "device_id": device_id,
            "window_hours": hours,
            "count": count,
            "metrics": metrics,
            "water_bottles_total": float(bottles or 0.0),
        }
        return jsonify({"status": "success", "stats": stats}), 200

    @app.route('/api/performance/hourly', methods=['GET'])
    @require_bearer_token
    def get_performance_hourly():
        """Hourly averages over the trailing window, oldest hour first."""
        try:
            device_id, hours, since = _window_params()
        except (ValueError, TypeError) as e:
            return jsonify({"error": f"Invalid query parameter: {e}"}), 400

        averages = [func.avg(getattr(PerformanceSample, metric)) for metric in AGGREGATE_METRICS]
        try:
            with database.session() as db:
                query = db.query(PerformanceSample.hour_bucket, func.count(PerformanceSample.id), *averages).filter(
                    PerformanceSample.user_id == g.user_id,
                    PerformanceSample.collected_at >= since,
                )
                if device_id:
                    query = query.filter(PerformanceSample.device_id == device_id)
                rows = (query.group_by(PerformanceSample.hour_bucket)
                        .order_by(asc(PerformanceSample.hour_bucket)).all())
        except Exception as e:
            logger.error("GET /api/performance/hourly: database error: %s", str(e))
            return jsonify({"error": "Failed to compute hourly buckets"}), 500

        buckets = [
            {
                "hour": _iso(bucket * SECONDS_PER_HOUR),
                "count": count,
                "averages": {
                    metric: float(value) if value is not None else None
                    for metric, value in zip(AGGREGATE_METRICS, values)
                },
            }
            for bucket, count, *values in rows
        ]
        return jsonify({"status": "success", "buckets": buckets}), 200

    @app.route('/api/devices', methods=['POST'])
    @require_bearer_token
    def post_device():
        """
        Register a device for the authenticated user (idempotent).

        Body: {"device_id": "...", "device_name": "...", "device_type": "laptop", "os": "Linux"}
        Returns 200 with the refreshed record if the device exists, 201 otherwise.
        """
        data = request.get_json(silent=True)
        if not data or not data.get("device_id") or not data.get("device_name"):
            return jsonify({"error": "Missing required fields: device_id, device_name"}), 400

        def upsert():
            with database.session() as db:
                device = db.query(Device).filter_by(user_id=g.user_id, device_id=data["device_id"]).first()
                created = device is None
                if created:
                    device = Device(
                        user_id=g.user_id,
                        device_id=data["device_id"],
                        device_name=data["device_name"],
                        device_type=data.get("device_type", "desktop"),
                        os=data.get("os", ""),
                    )
                    db.add(device)
                device.last_sync = time.time()
                device.is_active = True
                db.flush()
                return created, _device_to_dict(device)

        try:
            try:
                created, device = upsert()
            except IntegrityError:
                # Concurrent registration of the same device; the second pass updates it
                created, device = upsert()
        except Exception as e:
            logger.error("POST /api/devices: database error: %s", str(e))
            return jsonify({"error": "Failed to register device"}), 500

        logger.info("%s device '%s' for user %s", "Registered" if created else "Refreshed",
                    device["device_id"], g.user_id)
        return jsonify({"status": "success", "device": device}), 201 if created else 200

    @app.route('/api/devices', methods=['GET'])
    @require_bearer_token
    def get_devices():
        """Devices of the authenticated user, most recently synced first."""
        with database.session() as db:
            devices = (db.query(Device).filter_by(user_id=g.user_id)
                       .order_by(desc(Device.last_sync)).all())
            result = [_device_to_dict(d) for d in devices]
        return jsonify({"status": "success", "count": len(result), "devices": result}), 200

    @app.route('/health', methods=['GET'])
    def health_check():
        """Health check endpoint."""
        return jsonify({"status": "healthy"}), 200

    return app


def _device_to_dict(device: Device) -> dict:
    return {
        "device_id": device.device_id,
        "device_name": device.device_name,
        "device_type": device.device_type,
        "os": device.os,
        "last_sync": _iso(device.last_sync),
        "is_active": device.is_active,
    }


if __name__ == '__main__':
    from sharedUtils.config import get_server_config

    server_config = get_server_config()
    db_handle = Database(os.environ.get("DATABASE_URL", server_config.database_url))
    debug = os.environ.get("FLASK_DEBUG", "false").lower() == "true"
    logger.info("Starting telemetry store (debug=%s)...", debug)
    create_app(db_handle, server_config.api_tokens).run(host='0.0.0.0', port=5000, debug=debug)
