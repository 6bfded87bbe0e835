from fastapi import Depends, Header, HTTPException, Request

from social_inbox.config import settings
from social_inbox.services.actor import ADMIN, SELLER, Actor
from social_inbox.services.dedup_cache import DedupCache, DedupStore
from social_inbox.services.graph_client import MetaGraphClient
from social_inbox.services.identity_service import IdentityResolver
from social_inbox.services.page_token_cache import PageTokenCache
from social_inbox.services.realtime import Broadcaster, ConnectionManager
from social_inbox.services.receipt_service import ReceiptTracker
from social_inbox.services.reply_service import ReplyService
from social_inbox.services.webhook_service import WebhookProcessor


def init_state(app) -> None:
    """Create the process-wide collaborators once and keep them on app.state."""
    state = app.state
    if getattr(state, "dedup_cache", None) is None:
        state.dedup_cache = DedupCache(
            window_seconds=settings.dedup_window_seconds,
            high_water=settings.dedup_high_water,
            hard_limit=settings.dedup_hard_limit,
            evict_batch=settings.dedup_evict_batch,
        )
    if getattr(state, "receipt_tracker", None) is None:
        state.receipt_tracker = ReceiptTracker()
    if getattr(state, "token_cache", None) is None:
        state.token_cache = PageTokenCache()
    if getattr(state, "graph_client", None) is None:
        state.graph_client = MetaGraphClient()
    if getattr(state, "connection_manager", None) is None:
        state.connection_manager = ConnectionManager()
    if getattr(state, "broadcaster", None) is None:
        state.broadcaster = Broadcaster(state.connection_manager)


def _state(request: Request):
    init_state(request.app)
    return request.app.state


def get_dedup_cache(request: Request) -> DedupStore:
    return _state(request).dedup_cache


def get_receipt_tracker(request: Request) -> ReceiptTracker:
    return _state(request).receipt_tracker


def get_token_cache(request: Request) -> PageTokenCache:
    return _state(request).token_cache


def get_graph_client(request: Request) -> MetaGraphClient:
    return _state(request).graph_client


def get_broadcaster(request: Request) -> Broadcaster:
    return _state(request).broadcaster


def get_identity_resolver(
    graph: MetaGraphClient = Depends(get_graph_client),
    tokens: PageTokenCache = Depends(get_token_cache),
) -> IdentityResolver:
    return IdentityResolver(graph, tokens)


def get_webhook_processor(
    dedup: DedupStore = Depends(get_dedup_cache),
    tokens: PageTokenCache = Depends(get_token_cache),
    identity: IdentityResolver = Depends(get_identity_resolver),
    broadcaster: Broadcaster = Depends(get_broadcaster),
    receipts: ReceiptTracker = Depends(get_receipt_tracker),
) -> WebhookProcessor:
    return WebhookProcessor(dedup, tokens, identity, broadcaster, receipts=receipts, upload_dir=settings.upload_dir)


def get_reply_service(
    graph: MetaGraphClient = Depends(get_graph_client),
    tokens: PageTokenCache = Depends(get_token_cache),
    broadcaster: Broadcaster = Depends(get_broadcaster),
) -> ReplyService:
    return ReplyService(
        graph,
        tokens,
        broadcaster,
        upload_dir=settings.upload_dir,
        public_base_url=settings.public_base_url,
    )


def resolve_actor(admin_key: str | None, seller_id: str | None) -> Actor | None:
    """Map credentials handed over by the auth layer to an actor; None when there are none."""
    expected = settings.admin_api_key.strip()
    if expected and (admin_key or "").strip() == expected:
        return Actor(role=ADMIN)
    sid = (seller_id or "").strip()
    if sid:
        return Actor(role=SELLER, seller_id=sid)
    return None


def get_current_actor(
    x_admin_key: str | None = Header(default=None),
    x_seller_id: str | None = Header(default=None),
) -> Actor:
    actor = resolve_actor(x_admin_key, x_seller_id)
    if actor is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return actor
