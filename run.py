#!/usr/bin/env python3
"""
Gigline Backend - Main application entry point
"""
import os

from extensions import socketio
from server import create_app
from socket_events import presence_sweep_loop

app = create_app()

if __name__ == '__main__':
    port = app.config['PORT']
    debug = os.getenv('FLASK_ENV', 'development') == 'development'

    # Offline announcements fire from the sweep once the grace period elapses
    socketio.start_background_task(presence_sweep_loop, app)
    socketio.run(
        app,
        host='0.0.0.0',
        port=port,
        debug=debug,
        allow_unsafe_werkzeug=debug,
    )
