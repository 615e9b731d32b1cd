"""Tests for the EMR client (HTTP mocked with respx)."""

from datetime import datetime, timezone

import httpx
import pytest
import respx

from app.core.scheduling.emr_client import CONFIRMATION_SYSTEM, EMRClient
from app.core.scheduling.errors import (
    AppointmentConflictError,
    CircuitOpenError,
    EMRAuthenticationError,
    EMRClientError,
    EMRError,
    EMRTransientError,
)
from app.core.scheduling.types import AppointmentStatus, SlotStatus
from app.infra.metrics import MetricsSink
from app.infra.resilience import CircuitBreaker, RetryPolicy, SlidingWindowRateLimiter

BASE = "https://emr.test"
FHIR = "/apis/default/fhir"
TOKEN_PATH = "/oauth2/default/token"
TOKEN_RESP = {"access_token": "tok-1", "refresh_token": "ref-1", "expires_in": 3600}


def bundle(*resources) -> dict:
    return {"resourceType": "Bundle", "entry": [{"resource": r} for r in resources]}


def slot_resource(slot_id: str = "slot-1", status: str = "free") -> dict:
    return {
        "resourceType": "Slot",
        "id": slot_id,
        "schedule": {"reference": "Schedule/9/Practitioner/doc-1"},
        "status": status,
        "start": "2030-03-05T10:00:00+00:00",
        "end": "2030-03-05T11:00:00+00:00",
    }


def appointment_resource(
    appointment_id: str = "appt-1",
    start: str = "2030-03-05T10:00:00+00:00",
    end: str = "2030-03-05T11:00:00+00:00",
    status: str = "booked",
) -> dict:
    return {
        "resourceType": "Appointment",
        "id": appointment_id,
        "status": status,
        "identifier": [{"system": CONFIRMATION_SYSTEM, "value": "ABCD-2345"}],
        "appointmentType": {"coding": [{"code": "FOLLOWUP", "display": "follow-up"}]},
        "start": start,
        "end": end,
        "participant": [
            {"actor": {"reference": "Patient/patient-1", "display": "Pat Doe"}},
            {"actor": {"reference": "Practitioner/doc-1", "display": "Dr. Jane Smith"}},
        ],
    }


class TestEMRClient:
    """Test EMRClient transport, retries and mapping."""

    @pytest.fixture
    def sleeps(self):
        return []

    @pytest.fixture
    def client(self, sleeps):
        async def fake_sleep(seconds):
            sleeps.append(seconds)

        return EMRClient(
            base_url=BASE,
            site="default",
            client_id="client",
            client_secret="secret",
            rate_limiter=SlidingWindowRateLimiter(max_requests=100, window=1.0),
            circuit_breaker=CircuitBreaker(name="emr", failure_threshold=5),
            retry_policy=RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=30.0),
            sleep=fake_sleep,
            metrics=MetricsSink(),
        )

    @pytest.mark.asyncio
    async def test_free_slots_with_bearer_token(self, client):
        """The token is fetched once and sent on FHIR requests."""
        with respx.mock(base_url=BASE) as m:
            token = m.post(TOKEN_PATH).respond(200, json=TOKEN_RESP)
            slots_route = m.get(f"{FHIR}/Slot").respond(200, json=bundle(slot_resource()))

            start = datetime(2030, 3, 5, tzinfo=timezone.utc)
            end = datetime(2030, 3, 5, 23, 59, tzinfo=timezone.utc)
            slots = await client.get_free_slots(start, end, practitioner_id="doc-1")
            await client.get_free_slots(start, end)

        assert token.call_count == 1
        assert slots_route.call_count == 2
        request = slots_route.calls[0].request
        assert request.headers["Authorization"] == "Bearer tok-1"
        assert request.url.params.get("schedule.actor") == "Practitioner/doc-1"
        assert request.url.params.get_list("start")[0].startswith("ge2030-03-05")

        assert len(slots) == 1
        assert slots[0].id == "slot-1"
        assert slots[0].practitioner_id == "doc-1"
        assert slots[0].status == SlotStatus.FREE

    @pytest.mark.asyncio
    async def test_server_error_is_retried(self, client, sleeps):
        with respx.mock(base_url=BASE) as m:
            m.post(TOKEN_PATH).respond(200, json=TOKEN_RESP)
            route = m.get(f"{FHIR}/Slot/slot-1")
            route.side_effect = [
                httpx.Response(503),
                httpx.Response(502),
                httpx.Response(200, json=slot_resource()),
            ]

            slot = await client.get_slot("slot-1")

        assert slot is not None
        assert route.call_count == 3
        assert sleeps == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_retries_exhausted_raise(self, client, sleeps):
        with respx.mock(base_url=BASE) as m:
            m.post(TOKEN_PATH).respond(200, json=TOKEN_RESP)
            route = m.get(f"{FHIR}/Slot/slot-1").respond(500)

            with pytest.raises(EMRTransientError):
                await client.get_slot("slot-1")

        assert route.call_count == 3
        assert client.circuit_breaker.failure_count == 3

    @pytest.mark.asyncio
    async def test_network_error_is_transient(self, client):
        with respx.mock(base_url=BASE) as m:
            m.post(TOKEN_PATH).respond(200, json=TOKEN_RESP)
            route = m.get(f"{FHIR}/Practitioner")
            route.side_effect = [
                httpx.ConnectError("refused"),
                httpx.Response(200, json=bundle({"resourceType": "Practitioner", "id": "doc-1",
                                                 "name": [{"given": ["Jane"], "family": "Smith"}]})),
            ]

            practitioners = await client.get_practitioners()

        assert route.call_count == 2
        assert practitioners[0].name == "Dr. Jane Smith"

    @pytest.mark.asyncio
    async def test_not_found_returns_none_without_retry(self, client, sleeps):
        with respx.mock(base_url=BASE) as m:
            m.post(TOKEN_PATH).respond(200, json=TOKEN_RESP)
            route = m.get(f"{FHIR}/Appointment/missing").respond(404)

            appointment = await client.get_appointment("missing")

        assert appointment is None
        assert route.call_count == 1
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_bad_request_not_retried(self, client):
        with respx.mock(base_url=BASE) as m:
            m.post(TOKEN_PATH).respond(200, json=TOKEN_RESP)
            route = m.get(f"{FHIR}/Appointment").respond(400)

            with pytest.raises(EMRClientError):
                await client.search_appointments(patient_id="patient-1")

        assert route.call_count == 1
        assert client.circuit_breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_unauthorized_refreshes_token(self, client):
        """A 401 triggers a refresh-token grant and an immediate retry."""
        with respx.mock(base_url=BASE) as m:
            token = m.post(TOKEN_PATH)
            token.side_effect = [
                httpx.Response(200, json=TOKEN_RESP),
                httpx.Response(200, json={"access_token": "tok-2", "expires_in": 3600}),
            ]
            route = m.get(f"{FHIR}/Slot/slot-1")
            route.side_effect = [httpx.Response(401), httpx.Response(200, json=slot_resource())]

            slot = await client.get_slot("slot-1")

        assert slot is not None
        assert token.call_count == 2
        refresh_body = token.calls[1].request.content.decode()
        assert "grant_type=refresh_token" in refresh_body
        assert route.calls[1].request.headers["Authorization"] == "Bearer tok-2"

    @pytest.mark.asyncio
    async def test_second_unauthorized_is_terminal(self, client, sleeps):
        """Only one renewal per call; a repeated 401 is raised."""
        with respx.mock(base_url=BASE) as m:
            token = m.post(TOKEN_PATH)
            token.side_effect = [
                httpx.Response(200, json=TOKEN_RESP),
                httpx.Response(200, json={"access_token": "tok-2", "expires_in": 3600}),
            ]
            route = m.get(f"{FHIR}/Slot/slot-1").respond(401)

            with pytest.raises(EMRAuthenticationError):
                await client.get_slot("slot-1")

        assert route.call_count == 2
        assert token.call_count == 2
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_expired_token_renewed_before_request(self):
        now = [1000.0]
        client = EMRClient(
            base_url=BASE,
            site="default",
            client_id="client",
            client_secret="secret",
            clock=lambda: now[0],
            metrics=MetricsSink(),
        )
        with respx.mock(base_url=BASE) as m:
            token = m.post(TOKEN_PATH)
            token.side_effect = [
                httpx.Response(200, json={**TOKEN_RESP, "expires_in": 600}),
                httpx.Response(200, json={"access_token": "tok-2", "expires_in": 600}),
            ]
            m.get(f"{FHIR}/Slot/slot-1").respond(200, json=slot_resource())

            await client.get_slot("slot-1")
            # 600s lifetime minus the 300s margin
            now[0] += 301
            await client.get_slot("slot-1")

        assert token.call_count == 2

    @pytest.mark.asyncio
    async def test_conflict_on_create(self, client):
        with respx.mock(base_url=BASE) as m:
            m.post(TOKEN_PATH).respond(200, json=TOKEN_RESP)
            route = m.post(f"{FHIR}/Appointment").respond(409)

            with pytest.raises(AppointmentConflictError):
                await client.create_appointment(
                    start=datetime(2030, 3, 5, 10, tzinfo=timezone.utc),
                    end=datetime(2030, 3, 5, 11, tzinfo=timezone.utc),
                    patient_id="patient-1",
                    practitioner_id="doc-1",
                    appointment_type="routine",
                    confirmation_number="ABCD-2345",
                )

        assert route.call_count == 1

    @pytest.mark.asyncio
    async def test_create_without_id_raises(self, client):
        with respx.mock(base_url=BASE) as m:
            m.post(TOKEN_PATH).respond(200, json=TOKEN_RESP)
            route = m.post(f"{FHIR}/Appointment").respond(201)

            with pytest.raises(EMRError, match="without an id"):
                await client.create_appointment(
                    start=datetime(2030, 3, 5, 10, tzinfo=timezone.utc),
                    end=datetime(2030, 3, 5, 11, tzinfo=timezone.utc),
                    patient_id="patient-1",
                    practitioner_id="doc-1",
                    appointment_type="routine",
                    confirmation_number="ABCD-2345",
                )

        assert route.call_count == 1

    @pytest.mark.asyncio
    async def test_open_circuit_fails_fast(self):
        breaker = CircuitBreaker(name="emr", failure_threshold=1)
        breaker.record_failure()
        client = EMRClient(base_url=BASE, circuit_breaker=breaker, metrics=MetricsSink())

        with respx.mock(base_url=BASE, assert_all_called=False) as m:
            token = m.post(TOKEN_PATH).respond(200, json=TOKEN_RESP)

            with pytest.raises(CircuitOpenError):
                await client.get_slot("slot-1")

        assert token.call_count == 0

    @pytest.mark.asyncio
    async def test_appointment_mapping(self, client):
        with respx.mock(base_url=BASE) as m:
            m.post(TOKEN_PATH).respond(200, json=TOKEN_RESP)
            m.get(f"{FHIR}/Appointment/appt-1").respond(200, json=appointment_resource())

            appointment = await client.get_appointment("appt-1")

        assert appointment.patient_id == "patient-1"
        assert appointment.patient_name == "Pat Doe"
        assert appointment.practitioner_id == "doc-1"
        assert appointment.type == "follow-up"
        assert appointment.duration == 60
        assert appointment.confirmation_number == "ABCD-2345"
        assert appointment.status == AppointmentStatus.BOOKED

    @pytest.mark.asyncio
    async def test_check_time_available_detects_overlap(self, client):
        with respx.mock(base_url=BASE) as m:
            m.post(TOKEN_PATH).respond(200, json=TOKEN_RESP)
            m.get(f"{FHIR}/Appointment").respond(200, json=bundle(appointment_resource()))

            start = datetime(2030, 3, 5, 10, 30, tzinfo=timezone.utc)
            overlapping = await client.check_time_available(start, "doc-1", 30)
            own_slot = await client.check_time_available(
                start, "doc-1", 30, exclude_appointment_id="appt-1"
            )
            after = await client.check_time_available(
                datetime(2030, 3, 5, 11, tzinfo=timezone.utc), "doc-1", 30
            )

        assert overlapping is False
        assert own_slot is True
        assert after is True

    @pytest.mark.asyncio
    async def test_cancel_puts_cancelled_status(self, client):
        with respx.mock(base_url=BASE) as m:
            m.post(TOKEN_PATH).respond(200, json=TOKEN_RESP)
            m.get(f"{FHIR}/Appointment/appt-1").respond(200, json=appointment_resource())
            put = m.put(f"{FHIR}/Appointment/appt-1").respond(200, json={})

            await client.cancel_appointment("appt-1", reason="Feeling better")

        body = put.calls[0].request.content
        assert b'"status": "cancelled"' in body or b'"status":"cancelled"' in body

    @pytest.mark.asyncio
    async def test_connection_report(self, client):
        with respx.mock(base_url=BASE) as m:
            m.post(TOKEN_PATH).respond(200, json=TOKEN_RESP)
            m.get(f"{FHIR}/metadata").respond(200, json={"fhirVersion": "4.0.1"})
            m.get(f"{FHIR}/Practitioner").respond(200, json=bundle())

            result = await client.test_connection()

        assert result["success"] is True
        assert result["details"]["fhir_version"] == "4.0.1"
        assert result["details"]["circuit_state"] == "closed"

    def test_authorization_url_has_pkce(self, client):
        url = client.authorization_url()
        assert url.startswith(f"{BASE}/oauth2/default/authorize?")
        assert "code_challenge_method=S256" in url
        assert "code_challenge=" in url
