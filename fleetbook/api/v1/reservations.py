from datetime import datetime
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session
from typing import Optional

from fleetbook.core.entities import Actor
from fleetbook.core.state_machine import ReservationStateMachine
from fleetbook.core.time_window import build_window
from fleetbook.dependencies import get_current_actor, get_db, get_state_machine
from fleetbook.schemas.reservation import (
    ReservationCreateRequest, ReservationUpdateRequest, ApproveRequest, ReasonRequest,
    CheckInRequest, CheckOutRequest,
)
from fleetbook.schemas.common import ERROR_RESPONSES, success_response, paginated_response
from fleetbook.services.reservation_service import reservation_service

router = APIRouter(prefix="/reservations", responses=ERROR_RESPONSES)


@router.get("", summary="List reservations (role-filtered)")
def list_reservations(
    page:      int                = Query(1, ge=1),
    limit:     int                = Query(20, ge=1, le=100),
    status:    Optional[str]      = Query(None),
    vehicleId: Optional[int]      = Query(None),
    startDate: Optional[datetime] = Query(None),
    endDate:   Optional[datetime] = Query(None),
    search:    Optional[str]      = Query(None, description="Reference number, purpose or destination"),
    db:        Session            = Depends(get_db),
    actor:     Actor              = Depends(get_current_actor),
):
    data, total = reservation_service.list_reservations(
        db, actor, page, limit, status, vehicleId, startDate, endDate, search,
    )
    return paginated_response("Reservations retrieved successfully", data, total, page, limit)


@router.get("/calendar", summary="Active reservations in a date range")
def calendar(
    start:     datetime      = Query(...),
    end:       datetime      = Query(...),
    vehicleId: Optional[int] = Query(None),
    db:        Session       = Depends(get_db),
    _:         Actor         = Depends(get_current_actor),
):
    data = reservation_service.calendar(db, build_window(start, end), vehicleId)
    return success_response("Calendar retrieved", data)


@router.get("/upcoming", summary="Caller's next pending or approved reservations")
def upcoming(
    db:      Session                 = Depends(get_db),
    machine: ReservationStateMachine = Depends(get_state_machine),
    actor:   Actor                   = Depends(get_current_actor),
):
    data = reservation_service.upcoming(db, actor, machine.clock())
    return success_response("Upcoming reservations retrieved", data)


@router.get("/active", summary="Trips currently checked in")
def active(
    db:    Session = Depends(get_db),
    actor: Actor   = Depends(get_current_actor),
):
    return success_response("Active reservations retrieved", reservation_service.active(db, actor))


@router.get("/{reservation_id}", summary="Get reservation detail")
def get_reservation(
    reservation_id: int,
    machine: ReservationStateMachine = Depends(get_state_machine),
    actor:   Actor                   = Depends(get_current_actor),
):
    return success_response("Reservation retrieved",
                            reservation_service.get_reservation(machine, reservation_id, actor))


@router.get("/{reservation_id}/history", summary="Status history")
def get_history(
    reservation_id: int,
    machine: ReservationStateMachine = Depends(get_state_machine),
    actor:   Actor                   = Depends(get_current_actor),
):
    return success_response("History retrieved",
                            reservation_service.get_history(machine, reservation_id, actor))


@router.post("", status_code=status.HTTP_201_CREATED, summary="Create reservation")
def create_reservation(
    body:    ReservationCreateRequest,
    machine: ReservationStateMachine = Depends(get_state_machine),
    actor:   Actor                   = Depends(get_current_actor),
):
    data = reservation_service.create_reservation(machine, body, actor)
    return success_response("Reservation created successfully", data)


@router.patch("/{reservation_id}", summary="Update a pending reservation")
def update_reservation(
    reservation_id: int,
    body:    ReservationUpdateRequest,
    machine: ReservationStateMachine = Depends(get_state_machine),
    actor:   Actor                   = Depends(get_current_actor),
):
    data = reservation_service.update_reservation(machine, reservation_id, body, actor)
    return success_response("Reservation updated successfully", data)


@router.post("/{reservation_id}/approve", summary="Approve reservation (Manager / Admin)")
def approve_reservation(
    reservation_id: int,
    body:    ApproveRequest          = ApproveRequest(),
    machine: ReservationStateMachine = Depends(get_state_machine),
    actor:   Actor                   = Depends(get_current_actor),
):
    return success_response("Reservation approved",
                            reservation_service.approve(machine, reservation_id, body.comment, actor))


@router.post("/{reservation_id}/reject", summary="Reject reservation (Manager / Admin)")
def reject_reservation(
    reservation_id: int,
    body:    ReasonRequest,
    machine: ReservationStateMachine = Depends(get_state_machine),
    actor:   Actor                   = Depends(get_current_actor),
):
    return success_response("Reservation rejected",
                            reservation_service.reject(machine, reservation_id, body.reason, actor))


@router.post("/{reservation_id}/cancel", summary="Cancel reservation (owner or approver)")
def cancel_reservation(
    reservation_id: int,
    body:    ReasonRequest,
    machine: ReservationStateMachine = Depends(get_state_machine),
    actor:   Actor                   = Depends(get_current_actor),
):
    return success_response("Reservation cancelled",
                            reservation_service.cancel(machine, reservation_id, body.reason, actor))


@router.post("/{reservation_id}/check-in", summary="Pick up the vehicle (owner or assigned driver)")
def check_in(
    reservation_id: int,
    body:    CheckInRequest,
    machine: ReservationStateMachine = Depends(get_state_machine),
    actor:   Actor                   = Depends(get_current_actor),
):
    return success_response("Checked in",
                            reservation_service.check_in(machine, reservation_id, body, actor))


@router.post("/{reservation_id}/check-out", summary="Return the vehicle (owner or assigned driver)")
def check_out(
    reservation_id: int,
    body:    CheckOutRequest,
    machine: ReservationStateMachine = Depends(get_state_machine),
    actor:   Actor                   = Depends(get_current_actor),
):
    return success_response("Checked out",
                            reservation_service.check_out(machine, reservation_id, body, actor))
