"""
Hotspot Reconciler Service
Receives payment webhooks, polls the gateway for pending payments and
grants hotspot access once a payment is paid.
"""
from contextlib import asynccontextmanager
from typing import List, Optional
import logging

import jwt
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from starlette.concurrency import run_in_threadpool

from common.circuit_breaker import get_all_circuit_breakers
from common.error_handling import BusinessLogicError, ErrorCodes, add_error_handlers
from common.money import format_minor, to_minor
from common.schemas import AdminAction, PaymentView, ReconcileResult, RegisterPayment, SweepResult, WebhookAck
from common.security import verify_token
from common.settings import settings
from common.tracing import reconciler_tracer, tracing_middleware
from ledger_service.db import make_engine, make_session_factory
from ledger_service.ledger import LedgerUpdater
from ledger_service.models import Base, Payment
from provisioning_service.hotspot_client import HotspotApiClient
from provisioning_service.provisioner import CredentialProvisioner
from reconciliation_service.gateway import GatewayClient
from reconciliation_service.ingestion import WebhookReceiver
from reconciliation_service.poller import PaymentPoller
from reconciliation_service.reconciler import StatusReconciler
from reconciliation_service.repository import PaymentRepository
from reconciliation_service.state_machine import NON_TERMINAL_STATUSES
from reconciliation_service.work_queue import KeyedWorkQueue

# Configure logging
logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
logger = logging.getLogger(__name__)

ADMIN_WAIT_SECONDS = 60

class Components:
    """Everything one running service instance needs, wired once"""

    def __init__(self, session_factory, gateway: GatewayClient = None, hotspot_client: HotspotApiClient = None,
                 queue: KeyedWorkQueue = None, poll_interval_seconds: float = None):
        self.session_factory = session_factory
        self.repository = PaymentRepository(session_factory)
        self.queue = queue or KeyedWorkQueue()
        self.provisioner = CredentialProvisioner(hotspot_client or HotspotApiClient())
        self.ledger = LedgerUpdater(session_factory)
        self.reconciler = StatusReconciler(self.repository, self.provisioner, self.ledger,
                                           gateway=gateway or GatewayClient())
        self.webhooks = WebhookReceiver(self.repository, self.queue, self.reconciler.handle)
        self.poller = PaymentPoller(self.repository, self.queue, self.reconciler.handle,
                                    interval_seconds=poll_interval_seconds)

    @classmethod
    def from_settings(cls) -> "Components":
        engine = make_engine()
        Base.metadata.create_all(bind=engine)
        return cls(make_session_factory(engine))

    def shutdown(self):
        self.poller.stop()
        self.queue.shutdown(wait=True)

def payment_view(payment: Payment) -> PaymentView:
    return PaymentView(
        id=payment.id,
        external_reference=payment.external_reference,
        mac_address=payment.mac_address,
        status=payment.status,
        gateway_status=payment.gateway_status,
        amount_total=format_minor(payment.amount_total),
        amount_primary_share=format_minor(payment.amount_primary_share),
        amount_secondary_share=format_minor(payment.amount_secondary_share),
        provisioning_attempts=payment.provisioning_attempts or 0,
        needs_reconciliation=bool(payment.needs_reconciliation),
        error_message=payment.error_message,
        created_at=payment.created_at.isoformat() if payment.created_at else None,
        paid_at=payment.paid_at.isoformat() if payment.paid_at else None,
    )

def get_components(request: Request) -> Components:
    return request.app.state.components

# Admin routes require a down-scoped internal token
async def admin_auth(authorization: Optional[str] = Header(None)):
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(401, "missing bearer token")
    token = authorization.split(" ", 1)[1]
    try:
        verify_token(token, audience=settings.admin_audience)
    except jwt.PyJWTError as e:
        raise HTTPException(401, f"invalid admin token: {e}")

def create_app(components: Components = None, autostart_polling: bool = None) -> FastAPI:
    autostart = settings.poll_autostart if autostart_polling is None else autostart_polling

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "components", None) is None:
            app.state.components = Components.from_settings()
        logger.info(f"🚀 {settings.service_name} starting")
        if autostart:
            app.state.components.poller.start()
        yield
        app.state.components.shutdown()
        logger.info(f"{settings.service_name} stopped")

    app = FastAPI(title="Hotspot Reconciler Service", version="1.0.0", lifespan=lifespan)
    app.state.components = components
    add_error_handlers(app)

    # Add tracing middleware
    @app.middleware("http")
    async def add_tracing(request: Request, call_next):
        return await tracing_middleware(request, call_next, reconciler_tracer)

    @app.get("/health")
    async def health(request: Request):
        c = get_components(request)
        return {
            "ok": True,
            "status": "healthy",
            "service": settings.service_name,
            "polling": c.poller.is_running,
            "queue": c.queue.stats(),
            "circuit_breakers": get_all_circuit_breakers(),
        }

    @app.post("/webhook/{provider}", response_model=WebhookAck)
    async def webhook(provider: str, request: Request, x_signature: Optional[str] = Header(None)):
        """Acknowledge fast; reconciliation happens on the work queue"""
        body = await request.body()
        c = get_components(request)
        return await run_in_threadpool(c.webhooks.receive, provider, body, x_signature)

    @app.post("/admin/polling/start", response_model=AdminAction, dependencies=[Depends(admin_auth)])
    def polling_start(c: Components = Depends(get_components)):
        started = c.poller.start()
        return AdminAction(success=started, action="start",
                           message="Polling started" if started else "Polling already running")

    @app.post("/admin/polling/stop", response_model=AdminAction, dependencies=[Depends(admin_auth)])
    def polling_stop(c: Components = Depends(get_components)):
        stopped = c.poller.stop()
        return AdminAction(success=stopped, action="stop",
                           message="Polling stopped" if stopped else "Polling was not running")

    @app.get("/admin/polling/stats", dependencies=[Depends(admin_auth)])
    def polling_stats(c: Components = Depends(get_components)):
        return {
            "poller": c.poller.stats(),
            "queue": c.queue.stats(),
            "provisioning_in_flight": c.provisioner.in_flight,
        }

    @app.post("/admin/polling/check-now", response_model=SweepResult, dependencies=[Depends(admin_auth)])
    def polling_check_now(c: Components = Depends(get_components)):
        return c.poller.check_now(wait=True, timeout=ADMIN_WAIT_SECONDS)

    @app.get("/admin/payments/pending", response_model=List[PaymentView], dependencies=[Depends(admin_auth)])
    def pending_payments(c: Components = Depends(get_components)):
        return [payment_view(p) for p in c.repository.list_by_status(NON_TERMINAL_STATUSES)]

    @app.post("/admin/payments", response_model=PaymentView, status_code=201, dependencies=[Depends(admin_auth)])
    def register_payment(body: RegisterPayment, c: Components = Depends(get_components)):
        try:
            total = to_minor(body.amount_total)
            primary = to_minor(body.amount_primary_share) if body.amount_primary_share is not None else None
            secondary = to_minor(body.amount_secondary_share) if body.amount_secondary_share is not None else None
        except ValueError as e:
            raise BusinessLogicError(ErrorCodes.VALIDATION_ERROR, str(e), field="amount")
        payment = c.repository.register(body.external_reference, body.mac_address, body.plan_id, body.device_id,
                                        total, primary, secondary)
        return payment_view(payment)

    @app.post("/admin/payments/{external_reference}/reprocess", response_model=ReconcileResult,
              dependencies=[Depends(admin_auth)])
    def reprocess_payment(external_reference: str, c: Components = Depends(get_components)):
        if not c.repository.exists(external_reference):
            raise BusinessLogicError(ErrorCodes.PAYMENT_NOT_FOUND, f"Payment {external_reference} not found",
                                     field="external_reference")
        outcome = c.queue.run(external_reference, c.reconciler.reprocess, external_reference,
                              timeout=ADMIN_WAIT_SECONDS)
        return outcome.to_result()

    @app.get("/admin/provisioning/failed", response_model=List[PaymentView], dependencies=[Depends(admin_auth)])
    def failed_provisioning(c: Components = Depends(get_components)):
        return [payment_view(p) for p in c.repository.list_failed_provisioning()]

    @app.post("/admin/provisioning/retry", response_model=SweepResult, dependencies=[Depends(admin_auth)])
    def retry_provisioning(c: Components = Depends(get_components)):
        payments = c.repository.list_failed_provisioning()
        futures = [
            (p.external_reference,
             c.queue.submit(p.external_reference, c.reconciler.reprocess, p.external_reference,
                            p.gateway_status or "approved"))
            for p in payments
        ]
        results = []
        for ref, future in futures:
            try:
                results.append(future.result(timeout=ADMIN_WAIT_SECONDS).to_result())
            except Exception as e:
                results.append(ReconcileResult(external_reference=ref, action="error", detail=str(e)))
        logger.info(f"🔁 Retried provisioning for {len(payments)} payments")
        return SweepResult(checked=len(payments), submitted=len(futures), skipped=0, results=results)

    @app.get("/admin/provisioning/stats", dependencies=[Depends(admin_auth)])
    def provisioning_stats(c: Components = Depends(get_components)):
        attempts = c.repository.attempt_stats()
        return {
            "attempts": attempts,
            "total_attempts": sum(attempts.values()),
            "awaiting_retry": len(c.repository.list_failed_provisioning()),
            "in_flight": c.provisioner.in_flight,
            "max_concurrency": c.provisioner.max_concurrency,
        }

    @app.get("/admin/reconciliation/flagged", response_model=List[PaymentView], dependencies=[Depends(admin_auth)])
    def flagged_payments(c: Components = Depends(get_components)):
        return [payment_view(p) for p in c.repository.list_flagged()]

    return app

app = create_app()
