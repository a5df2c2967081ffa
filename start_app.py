#!/usr/bin/env python
"""Start the stock sync service on the port given by the environment."""
import os

import uvicorn

if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8000))

    print(f"Starting stock sync service on port {port}")

    uvicorn.run(
        "stocksync.main:app",
        host="0.0.0.0",
        port=port,
        log_level="info"
    )
