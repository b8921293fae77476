#!/usr/bin/env python3
"""Run the courtsignal API locally (uvicorn with reload)."""

import sys
from pathlib import Path

import uvicorn


def main():
    if not Path(".env").exists():
        print("WARNING: no .env found; DATABASE_URL, META_CAPI_* and LOMI_WEBHOOK_SECRET must be exported")

    try:
        uvicorn.run(
            "courtsignal.main:app",
            host="0.0.0.0",
            port=8000,
            reload=True,
            reload_dirs=["courtsignal"],
            log_level="info"
        )
    except KeyboardInterrupt:
        pass
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
