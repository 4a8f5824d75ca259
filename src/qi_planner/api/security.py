from __future__ import annotations

import base64
import binascii
import os
import secrets

from fastapi import HTTPException, Request

from qi_planner.projectstore.store import is_valid_project_id

_REALM = 'Basic realm="qi-planner-write"'


def require_safe_project_id(value: str) -> str:
    v = str(value)
    if not is_valid_project_id(v):
        raise HTTPException(status_code=400, detail="invalid project_id")
    return v


def _unauthorized() -> HTTPException:
    return HTTPException(status_code=401, detail="unauthorized", headers={"WWW-Authenticate": _REALM})


def enforce_write_auth(request: Request) -> None:
    """Optional lightweight auth for write endpoints (checkpoint webhooks, stage completion).

    - off (default): no auth required
    - basic: HTTP Basic auth required for write endpoints
    """
    mode = str(os.getenv("QIP_WRITE_AUTH_MODE", "off") or "off").strip().lower()
    if mode in ("", "off", "false", "0", "none"):
        return
    if mode != "basic":
        raise HTTPException(status_code=500, detail="invalid QIP_WRITE_AUTH_MODE (expected off|basic)")

    user = str(os.getenv("QIP_WRITE_AUTH_USER", "") or "").strip()
    passwd = str(os.getenv("QIP_WRITE_AUTH_PASS", "") or "").strip()
    if not user or not passwd:
        raise HTTPException(
            status_code=500, detail="write auth enabled but missing QIP_WRITE_AUTH_USER/QIP_WRITE_AUTH_PASS"
        )

    auth = request.headers.get("authorization") or ""
    if not auth.lower().startswith("basic "):
        raise _unauthorized()

    token = auth.split(" ", 1)[1].strip()
    try:
        decoded = base64.b64decode(token, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        raise _unauthorized() from None

    if ":" not in decoded:
        raise _unauthorized()
    got_user, got_pass = decoded.split(":", 1)
    if not (secrets.compare_digest(got_user, user) and secrets.compare_digest(got_pass, passwd)):
        raise _unauthorized()
