"""Browser-facing pages for passengers and drivers."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from functools import partial
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, TypeVar

import anyio
from fastapi import FastAPI, File, Form, Request, UploadFile, WebSocket, status
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from starlette.middleware.sessions import SessionMiddleware

from .backend import AuthError, BackendClient, BackendError
from .config import AppSettings, load_settings
from .drivers import (
    DRIVER_PROFILES_TABLE,
    ensure_user_record,
    fetch_online_drivers,
    get_driver_listing,
    get_profile_for_user,
    save_profile,
    set_online,
    set_photo,
)
from .images import ImageUpload, ImageValidationError, MAX_IMAGE_BYTES, upload_driver_image, validate_image
from .models import AuthSession, DriverListing, ImageKind, drivers_count_label
from .realtime import DRIVER_UPDATES_TOPIC, DriverFeed, FeedEvent, LOAD_ERROR_MESSAGE, RealtimeChannel
from .sessions import SessionManager
from .streaming import relay_feed_events, send_websocket_json


BASE_DIR = Path(__file__).resolve().parent
TEMPLATE_DIR = BASE_DIR / "templates"
STATIC_DIR = BASE_DIR / "static"

PASSWORD_MIN_LENGTH = 6
REFRESH_MARGIN = timedelta(seconds=60)
SESSION_COOKIE_NAME = "mobiurban_session"

logger = logging.getLogger("mobiurban.web")

T = TypeVar("T")


def _build_driver_feed(backend: BackendClient) -> DriverFeed:
    def channel_factory() -> RealtimeChannel:
        return RealtimeChannel(
            backend.realtime_url(),
            backend.anon_key,
            DRIVER_UPDATES_TOPIC,
            table=DRIVER_PROFILES_TABLE,
        )

    return DriverFeed(partial(fetch_online_drivers, backend), channel_factory)


def create_app(
    *,
    settings: Optional[AppSettings] = None,
    backend: Optional[BackendClient] = None,
    session_manager: Optional[SessionManager] = None,
    driver_feed: Optional[DriverFeed] = None,
) -> FastAPI:
    """Create the MobiUrban web application."""

    if settings is None:
        settings = load_settings()

    owns_backend = backend is None
    if backend is None:
        backend = BackendClient(settings.backend.url, settings.backend.anon_key)

    if session_manager is None:
        session_manager = SessionManager(ttl=timedelta(hours=settings.session_ttl_hours))

    if driver_feed is None and settings.realtime_enabled:
        driver_feed = _build_driver_feed(backend)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        yield
        if owns_backend:
            backend.close()

    app = FastAPI(
        title="MobiUrban",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.backend = backend
    app.state.sessions = session_manager
    app.state.driver_feed = driver_feed

    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.session_secret,
        session_cookie=SESSION_COOKIE_NAME,
        https_only=settings.secure_cookies,
        same_site="lax",
        max_age=int(session_manager.ttl.total_seconds()),
    )

    if STATIC_DIR.exists():
        app.mount("/static", StaticFiles(directory=str(STATIC_DIR)), name="static")

    templates = Jinja2Templates(directory=str(TEMPLATE_DIR))
    templates.env.globals["now"] = datetime.now
    templates.env.globals["count_label"] = drivers_count_label

    bucket = settings.backend.storage_bucket

    async def _call(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        return await anyio.to_thread.run_sync(partial(func, *args, **kwargs))

    def _flash(request: Request, message: str, *, category: str = "info") -> None:
        messages = request.session.get("flash_messages")
        if not isinstance(messages, list):
            messages = []
        messages.append({"message": message, "category": category})
        request.session["flash_messages"] = messages

    def _consume_flash(request: Request) -> List[Dict[str, str]]:
        messages = request.session.pop("flash_messages", [])
        if isinstance(messages, list):
            return messages
        return []

    def _render(
        request: Request,
        template: str,
        *,
        auth: Optional[AuthSession] = None,
        status_code: int = status.HTTP_200_OK,
        **context: Any,
    ) -> HTMLResponse:
        context.setdefault("messages", _consume_flash(request))
        context["auth"] = auth
        return templates.TemplateResponse(request, template, context, status_code=status_code)

    def _redirect(request: Request, name: str, **path_params: Any) -> RedirectResponse:
        return RedirectResponse(
            request.url_for(name, **path_params),
            status_code=status.HTTP_303_SEE_OTHER,
        )

    def _sign_in(request: Request, auth: AuthSession) -> None:
        request.session.clear()
        request.session["session_token"] = session_manager.create(auth)

    async def _current_auth(request: Request) -> Optional[AuthSession]:
        token = request.session.get("session_token")
        if not token:
            return None
        auth = session_manager.resolve(token)
        if auth is None:
            request.session.pop("session_token", None)
            return None
        if auth.expires_within(REFRESH_MARGIN):
            try:
                auth = await _call(backend.refresh_session, auth.refresh_token)
            except AuthError as exc:
                logger.warning("Failed to refresh session for %s: %s", auth.user_id, exc)
                session_manager.destroy(token)
                request.session.pop("session_token", None)
                _flash(request, "Sua sessão expirou. Entre novamente.", category="error")
                return None
            session_manager.replace(token, auth)
        return auth

    def _render_drivers_fragment(connection: Any, drivers: List[DriverListing]) -> str:
        template = templates.get_template("_drivers_list.html")
        return template.render({"request": connection, "drivers": drivers})

    def _event_payload(connection: Any, event: FeedEvent) -> Dict[str, object]:
        if event.type == "drivers":
            return {
                "type": "drivers",
                "count": len(event.drivers),
                "label": drivers_count_label(len(event.drivers)),
                "html": _render_drivers_fragment(connection, event.drivers),
            }
        return {"type": "error", "message": event.message or LOAD_ERROR_MESSAGE}

    @app.get("/", response_class=HTMLResponse, name="index")
    async def index(request: Request):
        return _render(request, "index.html")

    @app.get("/healthz", name="healthz")
    async def healthz():
        feed = app.state.driver_feed
        return JSONResponse(
            content={
                "status": "ok",
                "realtime": feed is not None,
                "listeners": feed.listener_count if feed is not None else 0,
            }
        )

    # ------------------------------------------------------------------
    # Passenger
    # ------------------------------------------------------------------
    @app.get("/passenger", response_class=HTMLResponse, name="passenger")
    async def passenger(request: Request):
        drivers: List[DriverListing] = []
        try:
            drivers = await _call(fetch_online_drivers, backend)
        except BackendError:
            _flash(request, LOAD_ERROR_MESSAGE, category="error")

        return _render(
            request,
            "drivers.html",
            drivers=drivers,
            live_updates=app.state.driver_feed is not None,
        )

    @app.get("/passenger/drivers/{driver_id}", response_class=HTMLResponse, name="driver_details")
    async def driver_details(request: Request, driver_id: str):
        try:
            driver = await _call(get_driver_listing, backend, driver_id)
        except BackendError:
            logger.exception("Failed to load driver %s", driver_id)
            _flash(request, "Erro ao carregar motorista", category="error")
            return _redirect(request, "passenger")

        if driver is None:
            return _render(
                request,
                "not_found.html",
                status_code=status.HTTP_404_NOT_FOUND,
                title="Motorista não encontrado",
            )
        return _render(request, "driver_detail.html", driver=driver)

    @app.websocket("/passenger/live", name="passenger_live")
    async def passenger_live(websocket: WebSocket):
        feed: Optional[DriverFeed] = app.state.driver_feed
        await websocket.accept()
        if feed is None:
            await websocket.close(code=1013)
            return

        await send_websocket_json(websocket, {"type": "status", "status": "connected"})
        async with feed.subscribe() as queue:
            await relay_feed_events(
                websocket,
                queue,
                partial(_event_payload, websocket),
            )

    # ------------------------------------------------------------------
    # Driver authentication
    # ------------------------------------------------------------------
    @app.get("/driver", name="driver")
    async def driver_home(request: Request):
        auth = await _current_auth(request)
        if auth is None:
            return _redirect(request, "show_login")
        return _redirect(request, "dashboard")

    @app.get("/driver/login", response_class=HTMLResponse, name="show_login")
    async def login_form(request: Request):
        auth = await _current_auth(request)
        if auth is not None:
            return _redirect(request, "dashboard")
        error = request.session.pop("login_error", None)
        return _render(request, "login.html", error=error)

    @app.post("/driver/login", name="process_login")
    async def process_login(request: Request, email: str = Form(...), password: str = Form(...)):
        try:
            auth = await _call(backend.sign_in_with_password, email, password)
        except AuthError as exc:
            if exc.status_code is not None and 400 <= exc.status_code < 500:
                request.session["login_error"] = "E-mail ou senha inválidos."
            else:
                logger.error("Sign-in failed for %s: %s", email, exc)
                request.session["login_error"] = "Não foi possível entrar. Tente novamente."
            return _redirect(request, "show_login")

        _sign_in(request, auth)
        try:
            await _call(ensure_user_record, backend, auth)
        except BackendError as exc:
            logger.warning("Could not ensure users row for %s: %s", auth.user_id, exc)
        _flash(request, "Login realizado com sucesso!", category="success")
        return _redirect(request, "dashboard")

    @app.get("/driver/register", response_class=HTMLResponse, name="show_register")
    async def register_form(request: Request):
        auth = await _current_auth(request)
        if auth is not None:
            return _redirect(request, "dashboard")
        return _render(request, "register.html", password_min_length=PASSWORD_MIN_LENGTH)

    @app.post("/driver/register", name="process_register")
    async def process_register(
        request: Request,
        name: str = Form(...),
        phone: str = Form(""),
        email: str = Form(...),
        password: str = Form(...),
        confirm_password: str = Form(...),
    ):
        errors: List[str] = []
        cleaned_name = name.strip()
        if not cleaned_name:
            errors.append("Informe seu nome.")
        if len(password) < PASSWORD_MIN_LENGTH:
            errors.append(f"A senha deve ter pelo menos {PASSWORD_MIN_LENGTH} caracteres.")
        if password != confirm_password:
            errors.append("As senhas não coincidem.")
        if errors:
            for message in errors:
                _flash(request, message, category="error")
            return _redirect(request, "show_register")

        try:
            auth = await _call(
                backend.sign_up,
                email,
                password,
                {"name": cleaned_name, "phone": phone.strip()},
            )
        except AuthError as exc:
            _flash(request, f"Erro ao criar conta: {exc}", category="error")
            return _redirect(request, "show_register")

        if auth is None:
            _flash(
                request,
                "Cadastro realizado! Verifique seu e-mail para confirmar a conta.",
                category="success",
            )
            return _redirect(request, "show_login")

        _sign_in(request, auth)
        try:
            await _call(ensure_user_record, backend, auth)
        except BackendError as exc:
            logger.warning("Could not create users row for %s: %s", auth.user_id, exc)
        _flash(request, "Conta criada! Cadastre seu veículo para começar.", category="success")
        return _redirect(request, "dashboard")

    @app.get("/driver/logout", name="logout")
    async def logout(request: Request):
        token = request.session.get("session_token")
        auth = session_manager.destroy(token) if token else None
        if auth is not None:
            try:
                await _call(backend.sign_out, auth.access_token)
            except AuthError as exc:
                logger.warning("Sign-out for %s failed: %s", auth.user_id, exc)
        request.session.clear()
        return _redirect(request, "index")

    # ------------------------------------------------------------------
    # Driver dashboard
    # ------------------------------------------------------------------
    @app.get("/driver/dashboard", response_class=HTMLResponse, name="dashboard")
    async def dashboard(request: Request):
        auth = await _current_auth(request)
        if auth is None:
            return _redirect(request, "show_login")

        profile = None
        user = None
        try:
            user = await _call(ensure_user_record, backend, auth)
            profile = await _call(get_profile_for_user, backend, auth)
        except BackendError:
            logger.exception("Failed to load dashboard for %s", auth.user_id)
            _flash(request, "Erro ao carregar seu perfil", category="error")

        return _render(
            request,
            "dashboard.html",
            auth=auth,
            user=user,
            profile=profile,
            image_kinds=list(ImageKind),
            max_image_mb=MAX_IMAGE_BYTES // (1024 * 1024),
            current_year=datetime.now().year,
        )

    @app.post("/driver/profile", name="save_profile")
    async def save_driver_profile(
        request: Request,
        vehicle_model: str = Form(""),
        vehicle_plate: str = Form(""),
        vehicle_color: str = Form(""),
        vehicle_year: str = Form(""),
        price_per_km: str = Form(""),
    ):
        auth = await _current_auth(request)
        if auth is None:
            return _redirect(request, "show_login")

        form = {
            "vehicle_model": vehicle_model,
            "vehicle_plate": vehicle_plate,
            "vehicle_color": vehicle_color,
            "vehicle_year": vehicle_year,
            "price_per_km": price_per_km,
        }
        try:
            existing = await _call(get_profile_for_user, backend, auth)
            await _call(save_profile, backend, auth, form, existing=existing)
        except ValueError as exc:
            _flash(request, str(exc), category="error")
        except BackendError:
            logger.exception("Failed to save driver profile for %s", auth.user_id)
            _flash(request, "Erro ao salvar perfil", category="error")
        else:
            _flash(request, "Perfil atualizado com sucesso!", category="success")
        return _redirect(request, "dashboard")

    @app.post("/driver/status", name="update_status")
    async def update_status(request: Request, online: str = Form(...)):
        auth = await _current_auth(request)
        if auth is None:
            return _redirect(request, "show_login")

        go_online = online.strip().lower() in {"1", "true", "yes", "on"}
        try:
            profile = await _call(get_profile_for_user, backend, auth)
            if profile is None:
                _flash(request, "Cadastre seu veículo antes de ficar online.", category="error")
                return _redirect(request, "dashboard")
            await _call(set_online, backend, auth, profile, go_online)
        except BackendError:
            logger.exception("Failed to update online status for %s", auth.user_id)
            _flash(request, "Erro ao atualizar status", category="error")
            return _redirect(request, "dashboard")

        if go_online:
            _flash(request, "Você está online!", category="success")
        else:
            _flash(request, "Você está offline.", category="info")
        return _redirect(request, "dashboard")

    @app.post("/driver/photos/{kind}", name="upload_photo")
    async def upload_photo(request: Request, kind: ImageKind, file: UploadFile = File(...)):
        auth = await _current_auth(request)
        if auth is None:
            return _redirect(request, "show_login")

        if not file.filename:
            _flash(request, "Selecione uma imagem.", category="error")
            return _redirect(request, "dashboard")

        try:
            validate_image(file.content_type, file.size or 0)
            data = await file.read(MAX_IMAGE_BYTES + 1)
            validate_image(file.content_type, len(data))
        except ImageValidationError as exc:
            _flash(request, str(exc), category="error")
            return _redirect(request, "dashboard")

        upload = ImageUpload(
            filename=file.filename,
            content_type=file.content_type or "",
            data=data,
        )
        try:
            profile = await _call(get_profile_for_user, backend, auth)
            if profile is None:
                _flash(request, "Cadastre seu veículo antes de enviar fotos.", category="error")
                return _redirect(request, "dashboard")
            url = await _call(upload_driver_image, backend, auth, kind, upload, bucket=bucket)
            await _call(set_photo, backend, auth, profile, kind, url)
        except ImageValidationError as exc:
            _flash(request, str(exc), category="error")
        except BackendError:
            logger.exception("Failed to upload %s photo for %s", kind.value, auth.user_id)
            _flash(request, "Erro ao carregar imagem", category="error")
        else:
            _flash(request, "Imagem carregada com sucesso!", category="success")
        return _redirect(request, "dashboard")

    @app.post("/driver/photos/{kind}/remove", name="remove_photo")
    async def remove_photo(request: Request, kind: ImageKind):
        auth = await _current_auth(request)
        if auth is None:
            return _redirect(request, "show_login")

        try:
            profile = await _call(get_profile_for_user, backend, auth)
            if profile is not None:
                await _call(set_photo, backend, auth, profile, kind, "")
        except BackendError:
            logger.exception("Failed to remove %s photo for %s", kind.value, auth.user_id)
            _flash(request, "Erro ao remover imagem", category="error")
        else:
            _flash(request, "Imagem removida.", category="info")
        return _redirect(request, "dashboard")

    return app


__all__ = ["create_app"]
