from datetime import datetime

import main
from database import TRACKING
from tests.factories import make_parcel


def test_add_tracking_entry(client, db):
    parcel_id = make_parcel(db, "u@x.com")
    res = client.post(
        "/tracking",
        json={"tracking_id": "TRK-1", "parcel_id": str(parcel_id), "status": "picked_up", "message": "Picked up"},
    )
    assert res.status_code == 201
    assert res.json()["success"] is True
    entry = db[TRACKING].find_one({"tracking_id": "TRK-1"})
    assert entry["parcel_id"] == parcel_id
    assert entry["updated_by"] == ""
    assert entry["time"] is not None


def test_tracking_entry_without_parcel(client, db):
    res = client.post("/tracking", json={"tracking_id": "TRK-2", "status": "created"})
    assert res.status_code == 201
    assert db[TRACKING].find_one({"tracking_id": "TRK-2"})["parcel_id"] is None


def test_tracking_entry_with_bad_parcel_id(client, db):
    res = client.post("/tracking", json={"tracking_id": "TRK-3", "parcel_id": "xyz", "status": "created"})
    assert res.status_code == 400
    assert db[TRACKING].count_documents({}) == 0


def test_tracking_history_oldest_first(client, db, monkeypatch):
    parcel_id = make_parcel(db, "u@x.com")
    times = iter([datetime(2024, 1, 1, 9), datetime(2024, 1, 1, 12)])
    monkeypatch.setattr(main, "now_utc", lambda: next(times))
    for status in ("picked_up", "delivered"):
        client.post("/tracking", json={"tracking_id": "TRK", "parcel_id": str(parcel_id), "status": status,
                                       "updated_by": "r@x.com"})

    res = client.get(f"/tracking/{parcel_id}")
    assert res.status_code == 200
    entries = res.json()
    assert [e["status"] for e in entries] == ["picked_up", "delivered"]
    assert entries[0]["parcel_id"] == str(parcel_id)


def test_tracking_history_with_bad_parcel_id(client):
    res = client.get("/tracking/not-an-id")
    assert res.status_code == 400
    assert res.json()["detail"] == "Invalid ID"
