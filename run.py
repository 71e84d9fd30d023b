# run.py
import logging
import os
import sys

import uvicorn

sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from mcfleet.core.config import HOST, LOG_LEVEL, PORT

if __name__ == "__main__":
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    print(f"===========================================================")
    print(f" 🚀 MCFLEET SERVER MANAGER STARTING...")
    print(f" 🏠 Dashboard URL: http://{HOST}:{PORT}")
    print(f"===========================================================")

    # "mcfleet:create_app" refers to the create_app factory in mcfleet/__init__.py
    uvicorn.run(
        "mcfleet:create_app",
        host=HOST,
        port=PORT,
        reload=os.getenv("RELOAD", "false").lower() in {"1", "true", "yes"},
        factory=True,
    )
