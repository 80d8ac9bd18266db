import logging
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from auth import AuthError, AuthService, NotAuthenticated
from config import get_settings
from csrf import (
    CSRF_HEADER,
    generate_csrf_token,
    requires_csrf_check,
    set_csrf_cookie,
    validate_double_submit,
)
from database import get_db
from email_service import EmailService
from encryption import get_email_cipher
from ratelimit import (
    forgot_password_limiter,
    login_limiter,
    rate_limited,
    register_limiter,
    reset_password_limiter,
    user_search_limiter,
)
from repository import SqlAuthRepository
from scheduler import SchedulerManager
from schemas import (
    BalanceIn,
    ChangeEmailIn,
    CompletedCycleOut,
    ForgotPasswordIn,
    ItemIn,
    ItemOut,
    ItemUpdate,
    LoginIn,
    MemberIn,
    MemberOut,
    RegisterIn,
    ResetPasswordIn,
    SharedWorkspaceOut,
    UserOut,
    WorkspaceOut,
    WorkspaceRef,
)
from security import SessionClaims, get_session_signer
from services import (
    ItemNotFound,
    ItemService,
    MemberAlreadyExists,
    MemberNotFound,
    UserNotFound,
    WorkspaceAccessDenied,
    WorkspaceNotFound,
    WorkspaceService,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Finance Tracker")

scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def _error(status_code: int, message: str, headers: Optional[dict] = None):
    return JSONResponse(
        {"success": False, "error": message}, status_code=status_code, headers=headers
    )


def _ok(data: object = None) -> dict[str, object]:
    if data is None:
        return {"success": True}
    return {"success": True, "data": data}


@app.middleware("http")
async def csrf_middleware(request: Request, call_next):
    settings = get_settings()
    cookie_token = request.cookies.get(settings.csrf_cookie_name)
    if requires_csrf_check(request.method, request.url.path) and not (
        validate_double_submit(cookie_token, request.headers.get(CSRF_HEADER))
    ):
        response = _error(403, "Invalid CSRF token")
    else:
        response = await call_next(request)
    if not cookie_token:
        set_csrf_cookie(response, generate_csrf_token(), settings)
    return response


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError):
    return _error(exc.status_code, exc.message)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return _error(exc.status_code, str(exc.detail), headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return _error(400, "Invalid request body")


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error(f"unhandled_error: path={request.url.path} error={exc}")
    return _error(500, "Internal server error")


def get_auth_service(db: Session = Depends(get_db)) -> AuthService:
    settings = get_settings()
    return AuthService(
        SqlAuthRepository(db),
        get_email_cipher(settings),
        get_session_signer(settings),
        EmailService(settings),
        settings,
    )


def current_session(
    request: Request, auth: AuthService = Depends(get_auth_service)
) -> SessionClaims:
    token = request.cookies.get(get_settings().cookie_name)
    if not token:
        raise NotAuthenticated()
    return auth.check_session(token)


def _set_session_cookie(response: Response, token: str) -> None:
    settings = get_settings()
    response.set_cookie(
        settings.cookie_name,
        token,
        httponly=True,
        secure=settings.is_production,
        samesite="strict",
        max_age=settings.token_expiry_secs,
        path="/",
    )


def _user_payload(user) -> dict[str, object]:
    return UserOut.model_validate(user).model_dump()


def _service_error(exc: ValueError) -> HTTPException:
    if isinstance(exc, WorkspaceAccessDenied):
        return HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, MemberAlreadyExists):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, (WorkspaceNotFound, ItemNotFound, MemberNotFound, UserNotFound)):
        return HTTPException(status_code=404, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


@app.get("/api/health")
def health():
    return _ok({"status": "ok"})


@app.post("/api/auth/register", dependencies=[Depends(rate_limited(register_limiter))])
def register(
    payload: RegisterIn,
    response: Response,
    auth: AuthService = Depends(get_auth_service),
):
    result = auth.register(payload)
    _set_session_cookie(response, result.token)
    return _ok(_user_payload(result.user))


@app.post("/api/auth/login", dependencies=[Depends(rate_limited(login_limiter))])
def login(
    payload: LoginIn,
    response: Response,
    auth: AuthService = Depends(get_auth_service),
):
    result = auth.login(payload.username, payload.password)
    _set_session_cookie(response, result.token)
    return _ok(_user_payload(result.user))


@app.post("/api/auth/logout")
def logout(
    response: Response,
    claims: SessionClaims = Depends(current_session),
    auth: AuthService = Depends(get_auth_service),
):
    auth.logout(claims.user_id)
    response.delete_cookie(get_settings().cookie_name, path="/")
    return _ok()


@app.get("/api/auth/me")
def me(
    claims: SessionClaims = Depends(current_session),
    auth: AuthService = Depends(get_auth_service),
):
    return _ok(_user_payload(auth.current_user(claims.user_id)))


@app.post(
    "/api/auth/forgot-password",
    dependencies=[Depends(rate_limited(forgot_password_limiter))],
)
def forgot_password(
    payload: ForgotPasswordIn, auth: AuthService = Depends(get_auth_service)
):
    auth.forgot_password(payload.username)
    return _ok()


@app.post(
    "/api/auth/reset-password",
    dependencies=[Depends(rate_limited(reset_password_limiter))],
)
def reset_password(
    payload: ResetPasswordIn, auth: AuthService = Depends(get_auth_service)
):
    auth.reset_password(payload.token, payload.new_password)
    return _ok()


@app.get("/api/user/me/email")
def my_email(
    claims: SessionClaims = Depends(current_session),
    auth: AuthService = Depends(get_auth_service),
):
    return _ok({"masked_email": auth.masked_email(claims.user_id)})


@app.put("/api/user/email")
def change_email(
    payload: ChangeEmailIn,
    claims: SessionClaims = Depends(current_session),
    auth: AuthService = Depends(get_auth_service),
):
    masked = auth.change_email(
        claims.user_id, payload.current_password, payload.new_email
    )
    return _ok({"masked_email": masked})


@app.get("/api/users/search", dependencies=[Depends(rate_limited(user_search_limiter))])
def search_user(
    username: Optional[str] = None,
    claims: SessionClaims = Depends(current_session),
    auth: AuthService = Depends(get_auth_service),
):
    return _ok(_user_payload(auth.find_user(username)))


@app.get("/api/workspace")
def get_workspace(
    workspace_id: Optional[int] = None,
    claims: SessionClaims = Depends(current_session),
    db: Session = Depends(get_db),
):
    try:
        data = WorkspaceService(db, claims.user_id).overview(workspace_id)
    except ValueError as exc:
        raise _service_error(exc) from exc
    data["items"] = [ItemOut.model_validate(item) for item in data["items"]]
    return _ok(WorkspaceOut.model_validate(data).model_dump(mode="json"))


@app.put("/api/workspace/balance")
def update_balance(
    payload: BalanceIn,
    claims: SessionClaims = Depends(current_session),
    db: Session = Depends(get_db),
):
    try:
        workspace = WorkspaceService(db, claims.user_id).update_balance(
            payload.balance_cents, payload.workspace_id
        )
    except ValueError as exc:
        raise _service_error(exc) from exc
    return _ok({"id": workspace.id, "balance_cents": workspace.balance_cents})


@app.post("/api/workspace/reset")
def reset_workspace(
    payload: WorkspaceRef,
    claims: SessionClaims = Depends(current_session),
    db: Session = Depends(get_db),
):
    try:
        WorkspaceService(db, claims.user_id).reset(payload.workspace_id)
    except ValueError as exc:
        raise _service_error(exc) from exc
    return _ok()


@app.get("/api/workspace/{workspace_id}/cycles")
def completed_cycles(
    workspace_id: int,
    claims: SessionClaims = Depends(current_session),
    db: Session = Depends(get_db),
):
    try:
        cycles = WorkspaceService(db, claims.user_id).completed_cycles(workspace_id)
    except ValueError as exc:
        raise _service_error(exc) from exc
    return _ok(
        [CompletedCycleOut.model_validate(c).model_dump(mode="json") for c in cycles]
    )


@app.get("/api/workspace/{workspace_id}/members")
def list_members(
    workspace_id: int,
    claims: SessionClaims = Depends(current_session),
    db: Session = Depends(get_db),
):
    try:
        members = WorkspaceService(db, claims.user_id).members(workspace_id)
    except ValueError as exc:
        raise _service_error(exc) from exc
    return _ok([MemberOut.model_validate(m).model_dump(mode="json") for m in members])


@app.post("/api/workspace/{workspace_id}/members")
def add_member(
    workspace_id: int,
    payload: MemberIn,
    claims: SessionClaims = Depends(current_session),
    db: Session = Depends(get_db),
):
    try:
        member = WorkspaceService(db, claims.user_id).add_member(
            workspace_id, payload.user_id, payload.permission
        )
    except ValueError as exc:
        raise _service_error(exc) from exc
    return _ok(MemberOut.model_validate(member).model_dump(mode="json"))


@app.delete("/api/workspace/{workspace_id}/members/{user_id}")
def remove_member(
    workspace_id: int,
    user_id: int,
    claims: SessionClaims = Depends(current_session),
    db: Session = Depends(get_db),
):
    try:
        WorkspaceService(db, claims.user_id).remove_member(workspace_id, user_id)
    except ValueError as exc:
        raise _service_error(exc) from exc
    return _ok()


@app.get("/api/workspaces/shared")
def shared_workspaces(
    claims: SessionClaims = Depends(current_session),
    db: Session = Depends(get_db),
):
    shared = WorkspaceService(db, claims.user_id).shared_workspaces()
    return _ok(
        [SharedWorkspaceOut.model_validate(w).model_dump(mode="json") for w in shared]
    )


@app.post("/api/items")
def create_item(
    payload: ItemIn,
    claims: SessionClaims = Depends(current_session),
    db: Session = Depends(get_db),
):
    try:
        item = ItemService(db, claims.user_id).create(payload)
    except ValueError as exc:
        raise _service_error(exc) from exc
    return _ok(ItemOut.model_validate(item).model_dump(mode="json"))


@app.put("/api/items/{item_id}")
def update_item(
    item_id: int,
    payload: ItemUpdate,
    claims: SessionClaims = Depends(current_session),
    db: Session = Depends(get_db),
):
    try:
        item = ItemService(db, claims.user_id).update(item_id, payload)
    except ValueError as exc:
        raise _service_error(exc) from exc
    return _ok(ItemOut.model_validate(item).model_dump(mode="json"))


@app.delete("/api/items/{item_id}")
def delete_item(
    item_id: int,
    claims: SessionClaims = Depends(current_session),
    db: Session = Depends(get_db),
):
    try:
        ItemService(db, claims.user_id).delete(item_id)
    except ValueError as exc:
        raise _service_error(exc) from exc
    return _ok()


@app.patch("/api/items/{item_id}/toggle-paid")
def toggle_item_paid(
    item_id: int,
    claims: SessionClaims = Depends(current_session),
    db: Session = Depends(get_db),
):
    try:
        item = ItemService(db, claims.user_id).toggle_paid(item_id)
    except ValueError as exc:
        raise _service_error(exc) from exc
    return _ok(ItemOut.model_validate(item).model_dump(mode="json"))


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
