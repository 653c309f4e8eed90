#!/usr/bin/env python3
"""
Development server runner for the ProofMint API.
The mint worker runs separately: python -m proofmint.worker
"""

import os
import sys
import uvicorn
from pathlib import Path

sys.path.append(str(Path(__file__).parent.parent))

from dotenv import load_dotenv
load_dotenv()

def main():
    if not os.getenv("DATABASE_DSN"):
        print("Missing required environment variable: DATABASE_DSN")
        sys.exit(1)

    from proofmint.core.database import Database
    db = Database()
    ok = db.check_connection()
    db.close()
    if not ok:
        print("Database connection failed; run scripts/init_db.py or check DATABASE_DSN")
        sys.exit(1)

    debug = os.getenv("DEBUG", "true").lower() == "true"
    uvicorn.run(
        "proofmint.main:app",
        host=os.getenv("API_HOST", "0.0.0.0"),
        port=int(os.getenv("API_PORT", 8000)),
        reload=debug,
        log_level="debug" if debug else "info",
    )

if __name__ == "__main__":
    main()
