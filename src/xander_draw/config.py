"""Configuration read from the environment.

CLI flags in ``__main__`` override these values.
"""

import os

INGEST_HOST = os.environ.get("INGEST_HOST", "0.0.0.0")
INGEST_PORT = int(os.environ.get("INGEST_PORT", "3200"))

# "auto" uses the npx converter only when npx is on PATH
MERMAID_CONVERTER = os.environ.get("MERMAID_CONVERTER", "auto").lower()
MERMAID_TIMEOUT = float(os.environ.get("MERMAID_TIMEOUT", "60"))

CORS_ORIGINS = [
    origin.strip()
    for origin in os.environ.get("CORS_ORIGINS", "*").split(",")
    if origin.strip()
]

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
