"""Start the decision engine API: python run_server.py

HOST, PORT and RELOAD come from the environment; set ENGINE_WORKER=1 to
also drain the deferred-ingest queue in-process.
"""
import os

import uvicorn

if __name__ == "__main__":
    uvicorn.run(
        "backend.app.main:app",
        host=os.getenv("HOST", "127.0.0.1"),
        port=int(os.getenv("PORT", "8000")),
        reload=os.getenv("RELOAD", "0") == "1",
    )
