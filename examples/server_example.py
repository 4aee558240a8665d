#!/usr/bin/env python3
"""Example session store server implementation."""

import logging
import os
from http.server import ThreadingHTTPServer

from session_upload import SessionHTTPRequestHandler, SessionServer
from session_upload.storage import SQLiteSessionStorage


def main():
    """Run the session store server."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    storage = SQLiteSessionStorage(db_path="sessions.db", upload_dir="uploads")
    session_server = SessionServer(
        storage=storage,
        base_path="/2",
        max_size=150 * 1024 * 1024,
        access_token=os.environ.get("SESSION_UPLOAD_TOKEN"),
    )

    class Handler(SessionHTTPRequestHandler):
        pass

    Handler.session_server = session_server

    # chunks of one session arrive concurrently
    host = "0.0.0.0"
    port = 8080
    server = ThreadingHTTPServer((host, port), Handler)
    print(f"Session store running on http://{host}:{port}")
    print(f"API endpoint: http://{host}:{port}/2")
    print("Press Ctrl+C to stop")

    try:
        server.serve_forever()
    except KeyboardInterrupt:
        print("\nShutting down server...")
        server.shutdown()


if __name__ == "__main__":
    main()
