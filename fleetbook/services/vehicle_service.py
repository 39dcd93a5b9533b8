import logging
from datetime import timedelta
from sqlalchemy.orm import Session
from sqlalchemy import or_

from fleetbook.core.entities import Actor, ReservationStatus, Vehicle, VehicleStatus
from fleetbook.core.state_machine import ReservationStateMachine
from fleetbook.core.store import vehicle_key
from fleetbook.core.time_window import TimeWindow
from fleetbook.models.vehicle import Vehicle as VehicleRow
from fleetbook.schemas.vehicle import VehicleCreateRequest, VehicleStatusRequest
from fleetbook.utils.exceptions import NotFoundException, DuplicateEntryException, VehicleInUseException

logger = logging.getLogger(__name__)


def _serialize(v: Vehicle | VehicleRow) -> dict:
    return {
        "id":              v.id,
        "name":            v.name,
        "plateNumber":     v.plateNumber,
        "brand":           v.brand,
        "model":           v.model,
        "year":            v.year,
        "capacity":        v.capacity,
        "status":          v.status.value,
        "currentOdometer": v.currentOdometer,
        "qrCode":          v.qrCode,
    }


class VehicleService:

    def list_vehicles(
        self, db: Session, page: int, limit: int,
        search: str | None, status: str | None,
    ) -> tuple[list[dict], int]:
        q = db.query(VehicleRow)

        if search:
            kw = f"%{search}%"
            q = q.filter(or_(
                VehicleRow.plateNumber.ilike(kw),
                VehicleRow.brand.ilike(kw),
                VehicleRow.model.ilike(kw),
                VehicleRow.name.ilike(kw),
            ))
        if status:
            q = q.filter(VehicleRow.status == status)

        total = q.count()
        items = q.order_by(VehicleRow.name).offset((page - 1) * limit).limit(limit).all()
        return [_serialize(v) for v in items], total

    def get_vehicle(self, db: Session, vehicle_id: int) -> dict:
        v = db.query(VehicleRow).filter(VehicleRow.id == vehicle_id).first()
        if not v:
            raise NotFoundException("Vehicle")
        return _serialize(v)

    def list_available(
        self, db: Session, machine: ReservationStateMachine,
        window: TimeWindow, require_driver: bool,
    ) -> list[dict]:
        ids = machine.available_vehicles(window, require_driver=require_driver)
        if not ids:
            return []
        rows = db.query(VehicleRow).filter(VehicleRow.id.in_(ids)).order_by(VehicleRow.name).all()
        return [_serialize(v) for v in rows]

    def create_vehicle(self, machine: ReservationStateMachine, data: VehicleCreateRequest, actor: Actor) -> dict:
        with machine.store.unit_of_work() as uow:
            if any(v.plateNumber == data.plateNumber for v in uow.list_vehicles()):
                raise DuplicateEntryException("Plate number already registered", field="plateNumber")
            vehicle = uow.add_vehicle(Vehicle(
                name=data.name,
                plateNumber=data.plateNumber,
                brand=data.brand,
                model=data.model,
                year=data.year,
                capacity=data.capacity,
                currentOdometer=data.currentOdometer,
                qrCode=machine.references.vehicle_qr_code(),
            ))
        logger.info(f"Vehicle {vehicle.plateNumber} registered by user #{actor.id}")
        return _serialize(vehicle)

    def update_status(self, machine: ReservationStateMachine, vehicle_id: int,
                      data: VehicleStatusRequest, actor: Actor) -> dict:
        """
        Manual status change for maintenance workflows. Held under the
        vehicle's lock so it cannot interleave with a check-in or approval.
        """
        target = VehicleStatus(data.status)
        with machine.store.unit_of_work([vehicle_key(vehicle_id)], timeout=machine.lock_timeout) as uow:
            v = uow.get_vehicle(vehicle_id)
            if v is None:
                raise NotFoundException("Vehicle")
            if v.status == VehicleStatus.IN_USE:
                raise VehicleInUseException()

            if target == VehicleStatus.AVAILABLE:
                now = machine.clock()
                instant = TimeWindow(start=now, end=now + timedelta(microseconds=1))
                if uow.find_reservations([ReservationStatus.APPROVED], vehicle_id, instant):
                    target = VehicleStatus.RESERVED

            updated = uow.save_vehicle(v.model_copy(update={"status": target}))

        reason = f" ({data.reason})" if data.reason else ""
        logger.info(f"Vehicle #{vehicle_id} {v.status.value} -> {target.value} by user #{actor.id}{reason}")
        return _serialize(updated)


vehicle_service = VehicleService()
