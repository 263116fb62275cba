"""Internal operator endpoints (admin only)."""

from typing import Annotated

from fastapi import APIRouter, Depends, Query

from booking_coordinator.api.deps import get_booking_store, get_current_admin, get_recovery_job
from booking_coordinator.core.security import Principal
from booking_coordinator.repositories.base import BookingStore
from booking_coordinator.schemas.booking import AnomalyResponse, SweepResponse
from booking_coordinator.services.recovery import RecoveryJob

router = APIRouter()


@router.get("/anomalies", response_model=list[AnomalyResponse])
async def list_anomalies(
    admin: Annotated[Principal, Depends(get_current_admin)],
    store: Annotated[BookingStore, Depends(get_booking_store)],
    limit: int = Query(100, ge=1, le=500),
) -> list[AnomalyResponse]:
    """Bookings flagged for operator attention."""
    bookings = await store.list_anomalies(limit)
    return [
        AnomalyResponse(
            booking_id=b.id,
            state=b.state.value,
            payment_state=b.payment_state.value,
            anomaly=b.anomaly,
            anomaly_at=b.anomaly_at,
        )
        for b in bookings
    ]


@router.post("/recovery/sweep", response_model=SweepResponse)
async def run_recovery_sweep(
    admin: Annotated[Principal, Depends(get_current_admin)],
    job: Annotated[RecoveryJob, Depends(get_recovery_job)],
) -> SweepResponse:
    """Run a recovery sweep now."""
    summary = await job.sweep()
    return SweepResponse(summary=summary.as_dict())
