# --- Imports ---
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, File, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from .auth import Principal, get_current_principal, require_admin
from .config import RABBITMQ, Config, configure_logging
from .consumers import NotificationWorker, start_consumer_thread
from .database import Base, get_db, make_engine, make_session_factory
from .errors import StoreFailure, StorefrontError
from .lifecycle import OrderLifecycle
from .messaging import EmailChannel, NotificationDispatcher, TelegramChannel
from .messaging.bus import RabbitMQProducer, RabbitMQTransport, connection_parameters
from .models import OrderStatus, PaymentMethod
from .orders import OrderRepository, OrderService
from .receipts import ReceiptService, ReceiptStorage
from .schemas import (
    AdminNotesUpdate,
    ExpandedOrderList,
    Message,
    MonthlyFigure,
    OrderCounts,
    OrderCreate,
    OrderEnvelope,
    OrderList,
    OrderPage,
    OrderPlaced,
    Pagination,
    ReceiptEnvelope,
    ReceiptList,
    ReceiptOut,
    StatusUpdate,
)
from .site_settings import DatabaseSettingsProvider, SettingsProvider

logger = logging.getLogger(__name__)

router = APIRouter()


# --- Dependencies ---

def get_dispatcher(request: Request) -> NotificationDispatcher:
    return request.app.state.dispatcher


def get_order_service(db: Session = Depends(get_db),
                      dispatcher: NotificationDispatcher = Depends(get_dispatcher)) -> OrderService:
    return OrderService(db, dispatcher)


def get_lifecycle(db: Session = Depends(get_db),
                  dispatcher: NotificationDispatcher = Depends(get_dispatcher)) -> OrderLifecycle:
    return OrderLifecycle(db, dispatcher)


def get_receipt_service(request: Request, db: Session = Depends(get_db)) -> ReceiptService:
    return ReceiptService(db, request.app.state.receipt_storage)


# --- Endpoints ---

@router.get("/")
def root():
    """Health check endpoint."""
    return {"message": "Order service is running"}


# Places an order: stock check, order + items + stock decrement in one transaction.
@router.post("/orders", status_code=201, response_model=OrderPlaced)
def create_order(cart: OrderCreate,
                 principal: Principal = Depends(get_current_principal),
                 service: OrderService = Depends(get_order_service)):
    order = service.place_order(principal.id, cart)
    return OrderPlaced(order_id=order.id, total_amount=order.total_amount, status=order.status)


@router.get("/orders/user", response_model=OrderList)
def list_user_orders(limit: Optional[int] = Query(default=None, ge=1, le=100),
                     principal: Principal = Depends(get_current_principal),
                     service: OrderService = Depends(get_order_service)):
    return OrderList(orders=service.user_orders(principal, limit))


@router.get("/orders/user/expanded", response_model=ExpandedOrderList)
def list_user_orders_expanded(principal: Principal = Depends(get_current_principal),
                              service: OrderService = Depends(get_order_service)):
    return ExpandedOrderList(orders=service.user_orders_expanded(principal))


@router.get("/orders/admin/list", response_model=OrderPage)
def admin_list_orders(status: Optional[OrderStatus] = None,
                      payment_method: Optional[PaymentMethod] = None,
                      page: int = Query(default=1, ge=1),
                      limit: int = Query(default=20, ge=1, le=100),
                      _: Principal = Depends(require_admin),
                      db: Session = Depends(get_db)):
    orders, total = OrderRepository(db).list_all(
        status=status,
        payment_method=payment_method.value if payment_method else None,
        page=page,
        limit=limit,
    )
    return OrderPage(orders=orders, pagination=Pagination(page=page, limit=limit, total=total))


@router.get("/orders/pending", response_model=OrderList)
def list_pending_orders(_: Principal = Depends(require_admin), db: Session = Depends(get_db)):
    return OrderList(orders=OrderRepository(db).list_open())


@router.get("/orders/count", response_model=OrderCounts)
def order_count(_: Principal = Depends(require_admin),
                service: OrderService = Depends(get_order_service)):
    current, previous = service.monthly_counts()
    return OrderCounts(current=current, previous=previous)


@router.get("/orders/revenue", response_model=MonthlyFigure)
def order_revenue(_: Principal = Depends(require_admin),
                  service: OrderService = Depends(get_order_service)):
    current, previous = service.monthly_revenue()
    return MonthlyFigure(current=current, previous=previous)


@router.get("/orders/{order_id}", response_model=OrderEnvelope)
def get_order(order_id: int,
              principal: Principal = Depends(get_current_principal),
              service: OrderService = Depends(get_order_service)):
    return OrderEnvelope(order=service.get_order(order_id, principal))


@router.patch("/orders/{order_id}/cancel", response_model=OrderEnvelope)
def cancel_order(order_id: int,
                 principal: Principal = Depends(get_current_principal),
                 lifecycle: OrderLifecycle = Depends(get_lifecycle)):
    order = lifecycle.cancel(order_id, principal)
    return OrderEnvelope(message="Order cancelled successfully", order=order)


@router.put("/orders/{order_id}/status", response_model=OrderEnvelope)
def update_order_status(order_id: int, body: StatusUpdate,
                        _: Principal = Depends(require_admin),
                        lifecycle: OrderLifecycle = Depends(get_lifecycle)):
    order = lifecycle.update_status(order_id, body.status)
    return OrderEnvelope(message="Order status updated successfully", order=order)


@router.put("/orders/{order_id}/notes", response_model=OrderEnvelope)
def update_admin_notes(order_id: int, body: AdminNotesUpdate,
                       _: Principal = Depends(require_admin),
                       lifecycle: OrderLifecycle = Depends(get_lifecycle)):
    order = lifecycle.update_admin_notes(order_id, body.admin_notes)
    return OrderEnvelope(message="Admin notes updated successfully", order=order)


@router.post("/orders/{order_id}/receipt", status_code=201, response_model=ReceiptEnvelope)
def upload_receipt(order_id: int,
                   receipt: UploadFile = File(...),
                   principal: Principal = Depends(get_current_principal),
                   service: ReceiptService = Depends(get_receipt_service)):
    stored = service.attach(order_id, principal, receipt)
    return ReceiptEnvelope(message="Receipt uploaded successfully", receipt=ReceiptOut.model_validate(stored))


@router.get("/orders/{order_id}/receipts", response_model=ReceiptList)
def list_receipts(order_id: int,
                  principal: Principal = Depends(get_current_principal),
                  service: ReceiptService = Depends(get_receipt_service)):
    receipts = service.list_for_order(order_id, principal)
    return ReceiptList(receipts=[ReceiptOut.model_validate(r) for r in receipts])


@router.delete("/receipts/{receipt_id}", response_model=Message)
def delete_receipt(receipt_id: int,
                   _: Principal = Depends(require_admin),
                   service: ReceiptService = Depends(get_receipt_service)):
    service.delete(receipt_id)
    return Message(message="Receipt deleted successfully")


# --- Error mapping ---

def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(StorefrontError)
    async def storefront_error(request: Request, exc: StorefrontError):
        if isinstance(exc, StoreFailure):
            return JSONResponse(status_code=500, content={"error": "Internal server error"})
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.exception_handler(SQLAlchemyError)
    async def store_error(request: Request, exc: SQLAlchemyError):
        logger.exception("Database error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    @app.exception_handler(RequestValidationError)
    async def invalid_request(request: Request, exc: RequestValidationError):
        details = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
            for err in exc.errors()
        ]
        return JSONResponse(status_code=400, content={"error": "Invalid request", "details": details})

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})


# --- App Instance ---

def build_dispatcher(config: Config, settings: SettingsProvider) -> NotificationDispatcher:
    """Channels plus the transport that carries events off the request path."""
    dispatcher = NotificationDispatcher([
        EmailChannel(settings),
        TelegramChannel(settings, api_base=config.telegram_api_base),
    ])
    if config.notification_transport == RABBITMQ:
        parameters = connection_parameters(config.rabbitmq_host, config.rabbitmq_user, config.rabbitmq_password)
        dispatcher.transport = RabbitMQTransport(RabbitMQProducer(parameters))
    else:
        dispatcher.transport = NotificationWorker(dispatcher.handle)
    return dispatcher


def create_app(config: Optional[Config] = None,
               engine: Optional[Engine] = None,
               dispatcher: Optional[NotificationDispatcher] = None,
               settings: Optional[SettingsProvider] = None) -> FastAPI:
    config = config or Config.from_env()
    configure_logging(config.log_level)

    engine = engine or make_engine(config.database_url)
    session_factory = make_session_factory(engine)
    settings = settings or DatabaseSettingsProvider(session_factory)
    dispatcher = dispatcher or build_dispatcher(config, settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Create database tables on startup if they don't exist.
        Base.metadata.create_all(bind=engine)
        transport = dispatcher.transport
        if isinstance(transport, NotificationWorker):
            transport.start()
        elif isinstance(transport, RabbitMQTransport):
            start_consumer_thread(dispatcher, transport.producer.parameters)
        yield
        if isinstance(transport, NotificationWorker):
            transport.stop()
        elif isinstance(transport, RabbitMQTransport):
            transport.close()

    app = FastAPI(title="Storefront order service", lifespan=lifespan)
    app.state.config = config
    app.state.session_factory = session_factory
    app.state.dispatcher = dispatcher
    app.state.receipt_storage = ReceiptStorage(config.upload_dir, config.receipt_max_bytes)
    register_error_handlers(app)
    app.include_router(router)
    return app


app = create_app()
