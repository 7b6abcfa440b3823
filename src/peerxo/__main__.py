"""Entry point for running the PeerXO broker via ``python -m peerxo``."""

from __future__ import annotations

import logging
import os

import uvicorn


def main() -> None:
    """Start the FastAPI-powered PeerXO peer broker."""

    logging.basicConfig(level=logging.INFO)
    host = os.environ.get("PEERXO_HOST", "0.0.0.0")
    port = int(os.environ.get("PEERXO_PORT", "8000"))
    uvicorn.run("peerxo.broker:app", host=host, port=port, reload=False)


if __name__ == "__main__":
    main()
