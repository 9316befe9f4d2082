from datetime import datetime, time, timezone

from fastapi import APIRouter, Depends, HTTPException, Request, status

from . import schemas
from .coordinator import RideCoordinator
from .earnings import EarningsLedger

router = APIRouter()


def get_coordinator(request: Request) -> RideCoordinator:
    coordinator = getattr(request.app.state, "coordinator", None)
    if coordinator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="coordinator not started",
        )
    return coordinator


def get_ledger(request: Request) -> EarningsLedger:
    ledger = getattr(request.app.state, "ledger", None)
    if ledger is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="earnings are not recorded"
        )
    return ledger


@router.get("/ride/snapshot", response_model=schemas.SnapshotSchema)
async def get_snapshot(
    coordinator: RideCoordinator = Depends(get_coordinator),
) -> schemas.SnapshotSchema:
    return schemas.SnapshotSchema.from_snapshot(coordinator.get_snapshot())


@router.post("/ride/dispatch", response_model=schemas.CommandResultSchema)
async def dispatch(
    data: schemas.DispatchRequest,
    coordinator: RideCoordinator = Depends(get_coordinator),
) -> schemas.CommandResultSchema:
    result = await coordinator.dispatch(
        data.kind, data.target_id, confirm=data.confirm
    )
    return schemas.CommandResultSchema.from_result(result)


@router.post("/ride/resync", status_code=status.HTTP_202_ACCEPTED)
async def resync(
    coordinator: RideCoordinator = Depends(get_coordinator),
) -> dict[str, str]:
    await coordinator.resync()
    return {"status": "scheduled"}


@router.get("/earnings", response_model=schemas.EarningsResponse)
async def get_earnings(
    since: datetime | None = None,
    ledger: EarningsLedger = Depends(get_ledger),
) -> schemas.EarningsResponse:
    if since is None:
        today = datetime.now(timezone.utc).date()
        since = datetime.combine(today, time.min, tzinfo=timezone.utc)
    elif since.tzinfo is None:
        since = since.replace(tzinfo=timezone.utc)
    total = await ledger.total_since(since)
    rides = [
        schemas.CompletedRideSchema.model_validate(record)
        for record in await ledger.rides(since)
    ]
    return schemas.EarningsResponse(since=since, total=total, rides=rides)
