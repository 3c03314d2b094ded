"""
api/routes/v1/csrf.py -- CSRF token issuance.

GET /api/v1/csrf-token mints a signed token, sets it as the non-httpOnly
`csrf-token` cookie and returns the same value in the body. The frontend
echoes it in the X-CSRF-Token header on every state-changing request.

Public: anonymous callers need a token before their first authenticated
mutation, and the token grants nothing on its own.
"""

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from api.models import CsrfTokenResponse
from auth.csrf import CSRF_COOKIE_MAX_AGE, CSRFGuard, set_csrf_cookie
from core.config import get_settings

router = APIRouter()


@router.get("/csrf-token", response_model=CsrfTokenResponse)
def csrf_token(request: Request) -> JSONResponse:
    guard: CSRFGuard = request.app.state.csrf_guard
    signed = guard.create_token()
    resp = JSONResponse(content=CsrfTokenResponse(csrf_token=signed, expires_in=CSRF_COOKIE_MAX_AGE).model_dump())
    set_csrf_cookie(resp, signed, secure=get_settings().secure_cookies)
    resp.headers["Cache-Control"] = "no-store"
    return resp
