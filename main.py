import logging
import uuid
from collections import OrderedDict
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import Body, Depends, FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from auth import DemoIdentityProvider
from config import Settings, load_settings
from database import MediumError, open_medium
from portal import PortalResolver
from schemas import COLLECTIONS, Identity, Portal
from seed import dangling_references, seed_if_empty
from store import EntityStore, StoreResult, StoreStatus, UnknownCollection

logger = logging.getLogger(__name__)

SESSION_COOKIE = "schub_session"

STATUS_CODES = {
    StoreStatus.NOT_FOUND: 404,
    StoreStatus.INVALID: 422,
    StoreStatus.CONFLICT: 409,
    StoreStatus.STORAGE_ERROR: 503,
}


def create_app(settings: Optional[Settings] = None, medium=None) -> FastAPI:
    settings = settings or load_settings()
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.medium = medium if medium is not None else open_medium(settings)
        app.state.store = EntityStore(app.state.medium, key_prefix=settings.key_prefix).open()
        app.state.resolvers = OrderedDict()
        app.state.identity_provider = DemoIdentityProvider(password=settings.demo_password)
        if settings.run_startup_seed:
            await seed_if_empty(app.state.store)
        yield
        logger.info("Closing entity store (%s sessions cached)", len(app.state.resolvers))
        app.state.resolvers.clear()
        app.state.store.flush()
        app.state.store.close()

    app = FastAPI(title="Schub Portal API", lifespan=lifespan)
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_routes(app)
    return app


# Dependencies

def get_store(request: Request) -> EntityStore:
    return request.app.state.store


async def get_resolver(request: Request, response: Response) -> PortalResolver:
    """Resolver for the caller's session cookie.

    Resolvers are kept in a bounded LRU map; an evicted session is rebuilt
    on its next request from the preference and identity slots in the medium.
    """
    settings = request.app.state.settings
    session_id = request.cookies.get(SESSION_COOKIE)
    if not session_id:
        session_id = uuid.uuid4().hex
        response.set_cookie(SESSION_COOKIE, session_id, max_age=settings.session_max_age,
                            httponly=True, samesite="lax")
    resolvers = request.app.state.resolvers
    resolver = resolvers.get(session_id)
    if resolver is None:
        resolver = PortalResolver(
            request.app.state.medium,
            key_prefix=settings.key_prefix,
            session_id=session_id,
            local_hosts=settings.local_hosts,
        )
        resolvers[session_id] = resolver
        while len(resolvers) > settings.session_cache_size:
            resolvers.popitem(last=False)
    else:
        resolvers.move_to_end(session_id)
    return resolver


def require_admin(resolver: PortalResolver = Depends(get_resolver)) -> Identity:
    identity = resolver.current_identity()
    if identity is None:
        raise HTTPException(status_code=401, detail="Sign in required")
    if identity.portal is not Portal.ADMIN:
        raise HTTPException(status_code=403, detail="Only the admin portal can change records")
    return identity


def get_collection(store: EntityStore, name: str):
    try:
        return store.collection(name)
    except UnknownCollection:
        raise HTTPException(status_code=404, detail=f"Unknown collection: {name}")


def serialize(record) -> Dict[str, Any]:
    return record.model_dump(mode="json", by_alias=True, exclude_none=True)


def unwrap(result: StoreResult):
    if not result.ok:
        raise HTTPException(status_code=STATUS_CODES.get(result.status, 500), detail=result.detail or result.status.value)
    return result


class LoginRequest(BaseModel):
    email: str
    password: str
    portal: Portal


class LoginResponse(BaseModel):
    user: Identity
    portal: Portal


class PortalChoice(BaseModel):
    portal: Portal


def register_routes(app: FastAPI) -> None:

    @app.get("/")
    def read_root():
        return {"message": "Schub Portal API ready"}

    @app.get("/test")
    def test_database(request: Request):
        medium = request.app.state.medium
        response = {
            "backend": "✅ Running",
            "storage": medium.name,
            "connection_status": "Not Connected",
            "collections": [],
        }
        try:
            keys = medium.keys()
            response["connection_status"] = "Connected"
            prefix = request.app.state.settings.key_prefix
            response["collections"] = sorted(
                k[len(prefix):] for k in keys if k.startswith(prefix) and k[len(prefix):] in COLLECTIONS
            )
        except MediumError as e:
            response["connection_status"] = f"❌ Error: {str(e)[:120]}"
        return response

    # Schemas endpoint for viewer
    @app.get("/schema")
    def get_schema():
        def model_fields(model):
            return {(v.serialization_alias or k): str(v.annotation) for k, v in model.model_fields.items()}
        return {name: model_fields(model) for name, model in COLLECTIONS.items()}

    @app.get("/integrity")
    async def integrity(store: EntityStore = Depends(get_store)):
        return {"dangling": await dangling_references(store)}

    # Portal and session

    @app.get("/portal")
    def resolve_portal(request: Request, path: str = "/", refresh: bool = False,
                       resolver: PortalResolver = Depends(get_resolver)):
        host = request.headers.get("host", "")
        resolution = resolver.resolve_portal(host, path, dict(request.query_params), refresh=refresh)
        return resolution

    @app.put("/portal")
    def choose_portal(choice: PortalChoice, resolver: PortalResolver = Depends(get_resolver)):
        if choice.portal is Portal.UNKNOWN:
            raise HTTPException(status_code=422, detail="Choose the student or the admin portal")
        return resolver.set_portal(choice.portal)

    @app.get("/access")
    def check_access(request: Request, path: str, resolver: PortalResolver = Depends(get_resolver)):
        resolver.resolve_portal(request.headers.get("host", ""), path, dict(request.query_params))
        return resolver.enter(path)

    @app.post("/login", response_model=LoginResponse)
    async def login(req: LoginRequest, request: Request, resolver: PortalResolver = Depends(get_resolver)):
        if not req.email or not req.password:
            raise HTTPException(status_code=400, detail="Email and password required")
        if req.portal is Portal.UNKNOWN:
            raise HTTPException(status_code=400, detail="Choose the student or the admin portal")
        identity = await request.app.state.identity_provider.authenticate(req.email, req.password, req.portal)
        if identity is None:
            raise HTTPException(status_code=401, detail="Invalid credentials")
        resolver.sign_in(identity)
        resolver.set_portal(identity.portal)
        return LoginResponse(user=identity, portal=resolver.portal)

    @app.post("/logout")
    def logout(request: Request, resolver: PortalResolver = Depends(get_resolver)):
        resolver.sign_out()
        request.app.state.resolvers.pop(resolver.session_id, None)
        return {"signed_out": True, "portal": resolver.portal}

    # Student views

    @app.get("/api/students/{student_id}/marks")
    async def list_student_marks(student_id: str, store: EntityStore = Depends(get_store)):
        return [serialize(m) for m in await store.student_marks(student_id)]

    @app.get("/api/students/{student_id}/behaviors")
    async def list_student_behaviors(student_id: str, store: EntityStore = Depends(get_store)):
        return [serialize(b) for b in await store.student_behaviors(student_id)]

    @app.get("/api/students/{student_id}/invoices")
    async def list_student_invoices(student_id: str, store: EntityStore = Depends(get_store)):
        return [serialize(i) for i in await store.student_invoices(student_id)]

    @app.post("/api/invoices/{invoice_id}/payment-reference")
    async def create_payment_reference(invoice_id: str, store: EntityStore = Depends(get_store),
                                       _: Identity = Depends(require_admin)):
        result = unwrap(await store.invoices.generate_payment_reference(invoice_id))
        return serialize(result.record)

    # Collections CRUD

    @app.get("/api/{collection}")
    async def list_records(collection: str, store: EntityStore = Depends(get_store)):
        return [serialize(r) for r in await get_collection(store, collection).list()]

    @app.post("/api/{collection}", status_code=201)
    async def create_record(collection: str, payload: Dict[str, Any] = Body(...),
                            store: EntityStore = Depends(get_store), _: Identity = Depends(require_admin)):
        result = unwrap(await get_collection(store, collection).create(payload))
        return serialize(result.record)

    @app.get("/api/{collection}/{record_id}")
    async def get_record(collection: str, record_id: str, store: EntityStore = Depends(get_store)):
        record = await get_collection(store, collection).get(record_id)
        if record is None:
            raise HTTPException(status_code=404, detail=f"{collection} {record_id} not found")
        return serialize(record)

    @app.put("/api/{collection}/{record_id}")
    async def update_record(collection: str, record_id: str, payload: Dict[str, Any] = Body(...),
                            store: EntityStore = Depends(get_store), _: Identity = Depends(require_admin)):
        result = unwrap(await get_collection(store, collection).update({**payload, "id": record_id}))
        return serialize(result.record)

    @app.delete("/api/{collection}/{record_id}")
    async def delete_record(collection: str, record_id: str,
                            store: EntityStore = Depends(get_store), _: Identity = Depends(require_admin)):
        unwrap(await get_collection(store, collection).delete(record_id))
        return {"deleted": True}


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=app.state.settings.port)
