#!/usr/bin/env python3
"""
Run the Bundle Labels API under uvicorn with settings taken from the environment
"""
import os
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent))

if __name__ == "__main__":
    import uvicorn

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", 5000))
    env = os.getenv("NODE_ENV", "development")
    reload = env == "development"

    print(f"Bundle Labels API on {host}:{port} (env={env}, reload={reload})")
    print(f"Docs: http://{host}:{port}/api/docs")
    print(f"Storefront labels: http://{host}:{port}/api/storefront/bundles?shop=<domain>")

    uvicorn.run(
        "main:app",
        host=host,
        port=port,
        reload=reload,
        log_level=os.getenv("LOG_LEVEL", "debug" if reload else "info").lower(),
    )
