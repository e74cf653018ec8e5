#!/usr/bin/env python3
"""
Lightweight Flask API for piradio.

Features:
- Status snapshot (station, title lines, bitrate, volume, route).
- Station list and station switching.
- Volume/mute transport commands, same path as the hardware buttons.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from flask import Flask, Response, abort, jsonify, request  # pyright: ignore[reportMissingImports]

if TYPE_CHECKING:
    from playback import PlaybackManager, RadioState

logger = logging.getLogger(__name__)

_TRANSPORT = {
    "volume_up": "volume_up",
    "volume_down": "volume_down",
    "mute": "toggle_mute",
}


def create_app(state: "RadioState", manager: "PlaybackManager") -> Flask:
    """Create the Flask app bound to the running radio."""
    app = Flask(__name__)

    @app.get("/api/status")
    def api_status() -> Response:
        return jsonify(state.snapshot())

    @app.get("/api/stations")
    def api_stations() -> Response:
        return jsonify(
            [
                {"index": idx, "name": st.display_name, "url": st.url}
                for idx, st in enumerate(state.stations)
            ]
        )

    @app.post("/api/station")
    def api_set_station() -> Response:
        data = request.get_json(silent=True) or {}
        direction = data.get("direction")
        index = data.get("index")
        if direction == "next":
            started = manager.next_station()
        elif direction == "previous":
            started = manager.previous_station()
        elif isinstance(index, int) and not isinstance(index, bool):
            if not 0 <= index < len(state.stations):
                abort(400, "index out of range")
            started = manager.switch_to(index)
        else:
            abort(400, "index or direction is required")
        logger.info("Station change via API -> %d", state.station_index)
        return jsonify(
            {"ok": started, "station_index": state.station_index}
        )

    @app.post("/api/transport")
    def api_transport() -> Response:
        data = request.get_json(silent=True) or {}
        command = data.get("command")
        method = _TRANSPORT.get(command) if isinstance(command, str) else None
        if method is None:
            abort(400, "command must be one of volume_up, volume_down, mute")
        if command != "mute" and state.muted:
            return jsonify({"ok": False, "reason": "muted"})
        sent = getattr(manager, method)()
        return jsonify({"ok": bool(sent)})

    return app


def run_app(app: Flask, host: str, port: int) -> None:
    """Run the Flask app (blocking)."""
    app.run(host=host, port=port, threaded=True)
