# consent_broker/api/routers/consents_callback.py
from __future__ import annotations
from datetime import datetime, timezone
from html import escape
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import HTMLResponse, JSONResponse

from consent_broker.api.deps import get_callback_reconciler
from consent_broker.services.callback_service import CallbackReconciler

router = APIRouter(prefix="/client", tags=["callback"])

_PAGE = """<!DOCTYPE html>
<html lang="en">
  <head>
    <meta charset="utf-8" />
    <title>Authorization callback</title>
    <style>
      body {{ font-family: system-ui, sans-serif; margin: 40px; }}
      .status-ok {{ color: #059669; }}
      .status-error {{ color: #e11d48; }}
      code {{ word-break: break-all; }}
    </style>
  </head>
  <body>
    <h1 class="{tone}">{title}</h1>
    <p>You can close this tab and return to your Open Finance session.
       The authorization response has been {persisted}.</p>
    {code_line}{error_line}
    <p><strong>State:</strong> <code>{state}</code></p>
    <p>Issuer: <code>{issuer}</code></p>
    <p>Timestamp: {timestamp}</p>
    <p>Need JSON instead? Re-send the request with <code>Accept: application/json</code>.</p>
  </body>
</html>"""


def render_callback_page(
    *, code: Optional[str], state: Optional[str], issuer: Optional[str], error: Optional[str], persisted: bool
) -> str:
    return _PAGE.format(
        tone="status-error" if error else "status-ok",
        title="Callback received with an error" if error else "Authorization callback captured",
        persisted="recorded" if persisted else "processed locally",
        code_line=f"<p><strong>Code:</strong> <code>{escape(code)}</code></p>" if code else "",
        error_line=f"<p><strong>Error:</strong> <code>{escape(error)}</code></p>" if error else "",
        state=escape(state or "N/A"),
        issuer=escape(issuer or "unknown"),
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


@router.get("/callback", summary="Authorization server redirect target")
async def authorization_callback(
    request: Request,
    reconciler: CallbackReconciler = Depends(get_callback_reconciler),
):
    params = request.query_params
    code = params.get("code")
    state = params.get("state")
    issuer = params.get("iss")
    error = params.get("error")
    error_description = params.get("error_description")

    if not (code or state or error):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not_found")

    query = {key: params.getlist(key) if len(params.getlist(key)) > 1 else params[key] for key in params.keys()}
    outcome = await reconciler.reconcile(query)
    status_code = status.HTTP_400_BAD_REQUEST if error else status.HTTP_200_OK

    if "application/json" in request.headers.get("accept", ""):
        return JSONResponse(
            status_code=status_code,
            content={
                "status": "error" if error else "ok",
                "persisted": outcome.persisted,
                "consent_id": outcome.consent_id,
                "code": code,
                "state": state,
                "issuer": issuer,
                "error": error,
                "error_description": error_description,
            },
        )
    return HTMLResponse(
        status_code=status_code,
        content=render_callback_page(code=code, state=state, issuer=issuer, error=error, persisted=outcome.persisted),
    )
