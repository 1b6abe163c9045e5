import uuid

import httpx
import pytest

from booking_engine.api import create_app


@pytest.fixture
async def client(engine):
    app = create_app(engine)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


def booking_payload(property_id, check_in="2026-04-01", check_out="2026-04-03", **extra):
    return {
        "property_id": str(property_id),
        "booking_type": "shortlet",
        "base_price": "100000",
        "check_in_date": check_in,
        "check_out_date": check_out,
        "number_of_guests": 2,
        **extra,
    }


def as_user(user_id):
    return {"X-User-Id": str(user_id)}


async def test_create_and_get_booking(client, apartment, guest_id, standard_fees):
    response = await client.post("/api/v1/bookings", json=booking_payload(apartment.id), headers=as_user(guest_id))

    assert response.status_code == 201
    body = response.json()
    assert body["status"] == "pending"
    assert body["total_price"] == "107000.00"

    fetched = await client.get(f"/api/v1/bookings/{body['id']}", headers=as_user(guest_id))
    assert fetched.status_code == 200
    assert fetched.json()["id"] == body["id"]


async def test_overlap_returns_conflict(client, apartment, guest_id):
    await client.post("/api/v1/bookings", json=booking_payload(apartment.id), headers=as_user(guest_id))

    response = await client.post(
        "/api/v1/bookings",
        json=booking_payload(apartment.id, check_in="2026-04-02", check_out="2026-04-05"),
        headers=as_user(uuid.uuid4()),
    )

    assert response.status_code == 409
    assert response.json()["error"] == "PropertyUnavailable"


async def test_invalid_payloads_are_rejected(client, apartment, guest_id):
    backwards = booking_payload(apartment.id, check_in="2026-04-03", check_out="2026-04-01")
    missing_dates = booking_payload(apartment.id, check_in=None, check_out=None)
    negative_discount = booking_payload(apartment.id, discount_amount="-10")

    for payload in (backwards, missing_dates, negative_discount):
        response = await client.post("/api/v1/bookings", json=payload, headers=as_user(guest_id))
        assert response.status_code == 422


async def test_zero_price_is_bad_request(client, apartment, guest_id):
    response = await client.post(
        "/api/v1/bookings", json=booking_payload(apartment.id, base_price="0"), headers=as_user(guest_id)
    )

    assert response.status_code == 400
    assert response.json()["error"] == "InvalidAmount"


async def test_missing_user_header(client, apartment):
    response = await client.post("/api/v1/bookings", json=booking_payload(apartment.id))

    assert response.status_code == 422


async def test_owner_lifecycle(client, apartment, guest_id, owner_id):
    created = (
        await client.post("/api/v1/bookings", json=booking_payload(apartment.id), headers=as_user(guest_id))
    ).json()
    booking_url = f"/api/v1/bookings/{created['id']}"

    forbidden = await client.post(f"{booking_url}/confirm", headers=as_user(guest_id))
    assert forbidden.status_code == 403

    confirmed = await client.post(f"{booking_url}/confirm", headers=as_user(owner_id))
    assert confirmed.status_code == 200
    assert confirmed.json()["status"] == "confirmed"

    rejected = await client.post(f"{booking_url}/reject", json={"reason": "late"}, headers=as_user(owner_id))
    assert rejected.status_code == 409
    assert rejected.json()["error"] == "InvalidTransition"

    early = await client.post(f"{booking_url}/complete", headers=as_user(owner_id))
    assert early.status_code == 409

    cancelled = await client.post(f"{booking_url}/cancel", json={"reason": "Trip moved"}, headers=as_user(guest_id))
    assert cancelled.status_code == 200
    assert cancelled.json()["booking"]["status"] == "cancelled"
    assert cancelled.json()["booking"]["cancellation_reason"] == "Trip moved"


async def test_payment_then_cancel_refunds(client, apartment, guest_id):
    created = (
        await client.post("/api/v1/bookings", json=booking_payload(apartment.id), headers=as_user(guest_id))
    ).json()
    booking_url = f"/api/v1/bookings/{created['id']}"

    paid = await client.post(f"{booking_url}/payments", json={"amount": created["total_price"]})
    assert paid.json()["payment_status"] == "completed"

    cancelled = await client.post(f"{booking_url}/cancel", headers=as_user(guest_id))

    assert cancelled.json()["refund_status"] == "refunded"
    assert cancelled.json()["booking"]["payment_status"] == "refunded"


async def test_unknown_booking(client, guest_id):
    response = await client.get(f"/api/v1/bookings/{uuid.uuid4()}", headers=as_user(guest_id))

    assert response.status_code == 404


async def test_fee_quote(client, standard_fees):
    response = await client.post("/api/v1/fees/quote", json={"base_price": "100000", "property_type": "apartment"})

    assert response.status_code == 200
    body = response.json()
    assert body["total_fees"] == "7000.00"
    assert body["net_amount"] == "93000.00"
    assert [line["type"] for line in body["breakdown"]] == ["service_fee", "tax"]


async def test_jobs_endpoints(client):
    jobs = await client.get("/api/v1/jobs")
    assert {job["name"] for job in jobs.json()} == {"auto_cancel", "release_funds"}

    run = await client.post("/api/v1/jobs/auto_cancel/run")
    assert run.status_code == 200
    assert run.json()["outcome"] == "completed"

    missing = await client.post("/api/v1/jobs/unknown/run")
    assert missing.status_code == 404
