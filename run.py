#!/usr/bin/env python3
"""
Launcher for the library desk service.

Browsers only grant camera access on HTTPS (or localhost), so the server
switches to HTTPS on its own when server.key / server.crt are present.

Usage:
    python run.py
    python run.py --host 127.0.0.1 --port 8000
    python run.py --https | --http | --reload
"""
import os
import sys

import uvicorn


def _arg(name: str, default: str) -> str:
    if name in sys.argv:
        idx = sys.argv.index(name)
        if idx + 1 < len(sys.argv):
            return sys.argv[idx + 1]
    return default


if __name__ == "__main__":
    host = _arg("--host", os.getenv("HOST", "0.0.0.0"))
    port = int(_arg("--port", os.getenv("PORT", "8000")))
    reload = "--reload" in sys.argv

    key_file = os.getenv("SSL_KEYFILE", "server.key")
    cert_file = os.getenv("SSL_CERTFILE", "server.crt")
    have_cert = os.path.exists(key_file) and os.path.exists(cert_file)

    if "--http" in sys.argv:
        use_https = False
    elif "--https" in sys.argv and not have_cert:
        print(f"⚠ --https flag used but {key_file} / {cert_file} not found. Continuing with HTTP...")
        use_https = False
    else:
        use_https = have_cert

    protocol = "https" if use_https else "http"
    print(f"🚀 Starting uvicorn on {protocol}://{host}:{port} (reload={reload})")
    if not use_https:
        print("   Phone cameras need HTTPS: set SSL_KEYFILE / SSL_CERTFILE or place server.key / server.crt here.")

    uvicorn.run(
        "app.main:app",
        host=host,
        port=port,
        reload=reload,
        ssl_keyfile=key_file if use_https else None,
        ssl_certfile=cert_file if use_https else None,
    )
