from conftest import utc
from services.sync_status import record_sync_result


async def test_failures_accumulate_then_reset(db_session, vehicle):
    await record_sync_result(db_session, vehicle.id, False, error="timeout", is_offline=True, now=utc(2024, 1, 1))
    status = await record_sync_result(db_session, vehicle.id, False, error="500", now=utc(2024, 1, 2))

    assert status.consecutive_failures == 2
    assert status.last_error == "500"
    assert not status.is_offline
    assert status.last_successful_sync is None

    status = await record_sync_result(db_session, vehicle.id, True, now=utc(2024, 1, 3))

    assert status.consecutive_failures == 0
    assert status.last_error is None
    assert status.last_sync_attempt == status.last_successful_sync
