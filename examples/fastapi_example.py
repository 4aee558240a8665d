#!/usr/bin/env python3
"""FastAPI integration example for the session store server."""

import logging

import uvicorn
from fastapi import FastAPI, Request, Response

from session_upload import SessionServer, SQLiteSessionStorage

logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

app = FastAPI(title="Session Upload Store")

storage = SQLiteSessionStorage(db_path="sessions.db", upload_dir="uploads")
session_server = SessionServer(storage=storage, base_path="/2", max_size=150 * 1024 * 1024)


@app.post("/2/files/{endpoint:path}")
async def handle_session_request(endpoint: str, request: Request):
    """Handle session upload protocol requests."""
    body = await request.body()

    status, response_headers, response_body = session_server.handle_request(
        request.method, request.url.path, dict(request.headers), body
    )

    return Response(content=response_body, status_code=status, headers=response_headers)


if __name__ == "__main__":
    print("Session store with FastAPI running on http://0.0.0.0:8000")
    print("API endpoint: http://0.0.0.0:8000/2")
    print("API docs: http://0.0.0.0:8000/docs")
    print("Press Ctrl+C to stop")
    uvicorn.run(app, host="0.0.0.0", port=8000, log_level="info")
