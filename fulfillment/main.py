"""
Fulfillment Service API

This module implements the FastAPI application in front of the order
fulfillment use cases: order status changes, driver shifts, order
assignment, pickup, delivery and cancellation.

Endpoints:
    GET /healthz: Health check endpoint for orchestration systems
    GET /orders/{order_id}: Get an order, with its cancellation evidence URL
    GET /orders/{order_id}/timeline: Order status/assignment history
    PUT /orders/{order_id}/status: Change an order's status (staff)
    POST /orders/{order_id}/ready: Mark an order ready and dispatch it (staff)
    POST /orders/{order_id}/cancel: Cancel a pending order from inventory (staff)
    POST /orders/{order_id}/assign: Assign an order to a driver by hand (staff)
    POST /drivers/shift: Join shift (driver)
    DELETE /drivers/shift: Leave shift (driver)
    GET /drivers/status: Shift status and current orders (driver)
    POST /drivers/orders/{order_id}/take: Pick up an assigned order (driver)
    POST /drivers/orders/{order_id}/deliver: Confirm delivery with the customer's code (driver)
    POST /drivers/orders/{order_id}/cancel: Cancel an order out for delivery (driver)
    WS /drivers/ws?token=...: Push channel for assignments (driver)
    POST /filehub/webhook/uploaded: FileHub upload-completed callback

Attributes:
    app (FastAPI): The FastAPI application instance configured with the title "fulfillment-service"
"""
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import List
import logging

from fastapi import Depends, FastAPI, Query, Request, WebSocket, WebSocketDisconnect, status
from fastapi.responses import JSONResponse
from jose import JWTError
from sqlalchemy.orm import Session

from . import models, schemas, auth
from .broker import DispatchBroker, RedisDispatchBroker
from .clients.filehub_client import AttachmentStore, FileHubClient
from .coordinator import FulfillmentCoordinator
from .crud import OrderStore
from .database import engine, get_db
from .errors import FulfillmentError
from .notifier import DriverNotifier, driver_sockets

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Create database tables
    models.Base.metadata.create_all(bind=engine)
    yield


app = FastAPI(title="fulfillment-service", lifespan=lifespan)


@app.exception_handler(FulfillmentError)
async def fulfillment_error_handler(request: Request, exc: FulfillmentError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@lru_cache
def get_broker() -> DispatchBroker:
    return RedisDispatchBroker.from_url()


@lru_cache
def get_attachment_store() -> AttachmentStore:
    return FileHubClient()


def get_notifier() -> DriverNotifier:
    return driver_sockets


def get_coordinator(
    db: Session = Depends(get_db),
    broker: DispatchBroker = Depends(get_broker),
    notifier: DriverNotifier = Depends(get_notifier),
    attachments: AttachmentStore = Depends(get_attachment_store),
) -> FulfillmentCoordinator:
    """Dependency wiring one coordinator per request around the request's database session."""
    return FulfillmentCoordinator(OrderStore(db), broker, notifier, attachments)


@app.get("/healthz", response_model=dict)
def health():
    """
    Health check endpoint for the fulfillment service.

    Returns:
        dict: {"status": "healthy"} when the service is operational.
    """
    return {"status": "healthy"}


# Orders (staff)

@app.get("/orders/{order_id}", response_model=schemas.Order)
async def get_order(
    order_id: str,
    coordinator: FulfillmentCoordinator = Depends(get_coordinator),
    current_staff: auth.CurrentStaff = Depends(auth.get_current_staff),
):
    """
    Get a single order by ID.

    Raises:
        404 if the order does not exist
    """
    return await coordinator.get_order(order_id)


@app.get("/orders/{order_id}/timeline", response_model=List[schemas.OrderEvent])
def get_order_timeline(
    order_id: str,
    coordinator: FulfillmentCoordinator = Depends(get_coordinator),
    current_staff: auth.CurrentStaff = Depends(auth.require_staff),
):
    """Get the status and assignment history of an order, oldest first."""
    return coordinator.get_order_timeline(order_id)


@app.put("/orders/{order_id}/status", response_model=schemas.StatusChange)
async def change_order_status(
    order_id: str,
    body: schemas.StatusUpdate,
    coordinator: FulfillmentCoordinator = Depends(get_coordinator),
    current_staff: auth.CurrentStaff = Depends(auth.require_staff),
):
    """
    Change an order's status and apply the transition's side effects.

    Raises:
        400 if the transition is not allowed
        404 if the order does not exist
    """
    return await coordinator.change_order_status(
        order_id, body.status, body.cancellation, actor_id=current_staff.id
    )


@app.post("/orders/{order_id}/ready", response_model=schemas.StatusChange)
async def mark_order_ready(
    order_id: str,
    coordinator: FulfillmentCoordinator = Depends(get_coordinator),
    current_staff: auth.CurrentStaff = Depends(auth.require_staff),
):
    """Mark an order ready; it goes to the longest-waiting driver or waits in the idle queue."""
    return await coordinator.mark_ready(order_id, actor_id=current_staff.id)


@app.post("/orders/{order_id}/cancel", response_model=schemas.StatusChange)
async def cancel_order_by_inventory(
    order_id: str,
    body: schemas.CancellationRequest,
    coordinator: FulfillmentCoordinator = Depends(get_coordinator),
    current_staff: auth.CurrentStaff = Depends(auth.require_staff),
):
    """
    Cancel a pending order from inventory.

    When attach_with_file_extension is given the response carries a
    cancellation_put_url to upload the evidence image to.
    """
    return await coordinator.cancel_order_by_inventory(
        order_id, body.reason, body.attach_with_file_extension, actor_id=current_staff.id
    )


@app.post("/orders/{order_id}/assign", response_model=schemas.Order)
async def assign_order_to_driver(
    order_id: str,
    body: schemas.ManualAssignment,
    coordinator: FulfillmentCoordinator = Depends(get_coordinator),
    current_staff: auth.CurrentStaff = Depends(auth.require_staff),
):
    """Assign an unassigned order to a specific driver."""
    return await coordinator.assign_order_to_driver_manually(order_id, body.driver_id, actor_id=current_staff.id)


# Drivers

@app.post("/drivers/shift", response_model=schemas.DriverOrders)
async def join_shift(
    coordinator: FulfillmentCoordinator = Depends(get_coordinator),
    driver: auth.CurrentStaff = Depends(auth.require_driver),
):
    """Start a shift. Returns the orders the driver already holds."""
    return await coordinator.join_shift(driver.id)


@app.delete("/drivers/shift", response_model=dict)
async def leave_shift(
    coordinator: FulfillmentCoordinator = Depends(get_coordinator),
    driver: auth.CurrentStaff = Depends(auth.require_driver),
):
    """
    End a shift.

    Raises:
        400 if the driver still holds an order
    """
    await coordinator.leave_shift(driver.id)
    return {"success": True}


@app.get("/drivers/status", response_model=schemas.DriverStatus)
async def check_driver_status(
    coordinator: FulfillmentCoordinator = Depends(get_coordinator),
    driver: auth.CurrentStaff = Depends(auth.require_driver),
):
    return await coordinator.check_driver_status(driver.id)


@app.post("/drivers/orders/{order_id}/take", response_model=schemas.Order)
async def take_order(
    order_id: str,
    coordinator: FulfillmentCoordinator = Depends(get_coordinator),
    driver: auth.CurrentStaff = Depends(auth.require_driver),
):
    """Pick up a ready order assigned to the calling driver."""
    return await coordinator.take_order(order_id, driver.id)


@app.post("/drivers/orders/{order_id}/deliver", response_model=schemas.Order)
async def mark_order_delivered(
    order_id: str,
    body: schemas.DeliveryConfirmation,
    coordinator: FulfillmentCoordinator = Depends(get_coordinator),
    driver: auth.CurrentStaff = Depends(auth.require_driver),
):
    """
    Confirm delivery with the verification code the customer received.

    Raises:
        403 if the code is wrong
        429 after too many attempts within a minute
    """
    return await coordinator.mark_order_delivered(order_id, driver.id, body.verification_code)


@app.post("/drivers/orders/{order_id}/cancel", response_model=schemas.StatusChange)
async def cancel_order_by_driver(
    order_id: str,
    body: schemas.CancellationRequest,
    coordinator: FulfillmentCoordinator = Depends(get_coordinator),
    driver: auth.CurrentStaff = Depends(auth.require_driver),
):
    """Cancel an order the driver is delivering, e.g. when the customer refuses it."""
    return await coordinator.cancel_order_by_driver(
        order_id, driver.id, body.reason, body.attach_with_file_extension
    )


@app.websocket("/drivers/ws")
async def driver_socket(websocket: WebSocket, token: str = Query(...)):
    """
    Push channel for ready-order assignments.

    The driver authenticates with its access token as a query parameter;
    anything it sends is ignored.
    """
    try:
        driver = auth.decode_token(token)
    except JWTError as e:
        logger.warning(f"Rejecting driver socket: {e}")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    if driver.role != "driver":
        logger.warning(f"Rejecting socket for staff {driver.id} with role '{driver.role}'")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    driver_sockets.connect(driver.id, websocket)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        driver_sockets.disconnect(driver.id, websocket)


# FileHub

@app.post("/filehub/webhook/uploaded", response_model=dict)
async def filehub_upload_completed(
    event: schemas.UploadCompletedEvent,
    coordinator: FulfillmentCoordinator = Depends(get_coordinator),
):
    """Link a finished upload (e.g. cancellation evidence) to its target row."""
    return await coordinator.record_uploaded_attachment(event)
