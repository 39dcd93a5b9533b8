from datetime import datetime
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session
from typing import Optional

from fleetbook.core.entities import Actor
from fleetbook.core.state_machine import ReservationStateMachine
from fleetbook.core.time_window import build_window
from fleetbook.dependencies import get_admin_actor, get_current_actor, get_db, get_state_machine
from fleetbook.schemas.vehicle import VehicleCreateRequest, VehicleStatusRequest
from fleetbook.schemas.common import ERROR_RESPONSES, success_response, paginated_response
from fleetbook.services.vehicle_service import vehicle_service

router = APIRouter(prefix="/vehicles", responses=ERROR_RESPONSES)


@router.get("", summary="List vehicles (paginated)")
def list_vehicles(
    page:   int           = Query(1, ge=1),
    limit:  int           = Query(20, ge=1, le=100),
    search: Optional[str] = Query(None),
    status: Optional[str] = Query(None, description="AVAILABLE | RESERVED | IN_USE | MAINTENANCE | OUT_OF_SERVICE"),
    db:     Session       = Depends(get_db),
    _:      Actor         = Depends(get_current_actor),
):
    data, total = vehicle_service.list_vehicles(db, page, limit, search, status)
    return paginated_response("Vehicles retrieved successfully", data, total, page, limit)


@router.get("/available", summary="Vehicles free for a date range")
def list_available(
    start:         datetime = Query(...),
    end:           datetime = Query(...),
    requireDriver: bool     = Query(False),
    db:            Session  = Depends(get_db),
    machine:       ReservationStateMachine = Depends(get_state_machine),
    _:             Actor    = Depends(get_current_actor),
):
    data = vehicle_service.list_available(db, machine, build_window(start, end), requireDriver)
    return success_response("Available vehicles retrieved", data)


@router.post("/refresh-status", summary="Recompute RESERVED / AVAILABLE statuses (Admin)")
def refresh_status(
    machine: ReservationStateMachine = Depends(get_state_machine),
    _:       Actor                   = Depends(get_admin_actor),
):
    changed = machine.refresh_vehicle_statuses()
    return success_response("Vehicle statuses refreshed", {"updated": changed})


@router.get("/{vehicle_id}", summary="Get vehicle by ID")
def get_vehicle(vehicle_id: int, db: Session = Depends(get_db), _: Actor = Depends(get_current_actor)):
    return success_response("Vehicle retrieved", vehicle_service.get_vehicle(db, vehicle_id))


@router.post("", status_code=status.HTTP_201_CREATED, summary="Register vehicle (Admin)")
def create_vehicle(
    body:    VehicleCreateRequest,
    machine: ReservationStateMachine = Depends(get_state_machine),
    actor:   Actor                   = Depends(get_admin_actor),
):
    data = vehicle_service.create_vehicle(machine, body, actor)
    return success_response("Vehicle created successfully", data)


@router.patch("/{vehicle_id}/status", summary="Change vehicle status (Admin)")
def update_status(
    vehicle_id: int,
    body:       VehicleStatusRequest,
    machine:    ReservationStateMachine = Depends(get_state_machine),
    actor:      Actor                   = Depends(get_admin_actor),
):
    data = vehicle_service.update_status(machine, vehicle_id, body, actor)
    return success_response("Vehicle status updated", data)
