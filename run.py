#!/usr/bin/env python3
"""
Entry point for the SpeakUp service.

Usage:
    python run.py

Environment Variables:
    FLASK_ENV: development, production or testing (default: development)
    PORT: Port to run on (default: 5000)
    LOG_LEVEL: Root log level (default: INFO)
    REDIS_URL: Enables the Socket.IO message queue and event mirroring
"""
import os
import logging


def run_server():
    """Run the API and Socket.IO gateway."""
    from speakup.app import create_app
    from speakup.extensions import socketio

    logging.basicConfig(
        level=os.getenv('LOG_LEVEL', 'INFO').upper(),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s'
    )

    app = create_app()
    port = int(os.getenv('PORT', 5000))
    debug = os.getenv('FLASK_ENV', 'development') == 'development'

    logging.getLogger(__name__).info("Starting SpeakUp on port %d...", port)
    socketio.run(app, host='0.0.0.0', port=port, debug=debug, use_reloader=False, allow_unsafe_werkzeug=True)


if __name__ == '__main__':
    run_server()
