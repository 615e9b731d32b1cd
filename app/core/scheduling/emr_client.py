"""
HTTP client for the practice-management system (FHIR API).

Every outbound call is rate limited, runs through a circuit breaker and is
retried with capped exponential backoff:

- 5xx, timeouts, network errors and 429: retried
- 401: token refreshed, then retried immediately
- other 4xx: returned to the caller at once
- circuit open: returned to the caller at once

Endpoints:
- POST {base}/oauth2/{site}/token - token grants
- GET  {base}/oauth2/{site}/authorize - authorization-code + PKCE
- {base}/apis/{site}/fhir/... - Slot, Appointment, Practitioner, Patient
"""

import asyncio
import base64
import hashlib
import logging
import re
import secrets
import time
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urlencode

import httpx

from app.config import get_settings
from app.infra.metrics import MetricsSink, get_metrics
from app.infra.resilience import (
    CircuitBreaker,
    CircuitOpenError,
    RetryPolicy,
    SlidingWindowRateLimiter,
)
from .errors import (
    AppointmentConflictError,
    EMRAuthenticationError,
    EMRClientError,
    EMRError,
    EMRNotFoundError,
    EMRRateLimitedError,
    EMRTransientError,
)
from .types import (
    APPOINTMENT_TYPE_CODES,
    AppointmentDetails,
    AppointmentStatus,
    PatientRecord,
    Practitioner,
    Slot,
    SlotStatus,
    appointment_type_from_coding,
    parse_datetime,
)

logger = logging.getLogger(__name__)

APPOINTMENT_TYPE_SYSTEM = "http://terminology.hl7.org/CodeSystem/v2-0276"
CONFIRMATION_SYSTEM = "urn:practice-scheduler:confirmation"

_FHIR_STATUS = {
    "proposed": AppointmentStatus.BOOKED,
    "pending": AppointmentStatus.BOOKED,
    "booked": AppointmentStatus.BOOKED,
    "arrived": AppointmentStatus.BOOKED,
    "checked-in": AppointmentStatus.BOOKED,
    "fulfilled": AppointmentStatus.COMPLETED,
    "cancelled": AppointmentStatus.CANCELLED,
    "noshow": AppointmentStatus.NO_SHOW,
}


def _digits(value: str) -> str:
    return re.sub(r"\D", "", value or "")


def _isoformat(value: datetime) -> str:
    return value.isoformat()


class EMRClient:
    """
    Resilient client for the practice-management system.

    Tokens are cached in memory and renewed ``token_expiry_margin`` seconds
    before their declared expiry.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        site: Optional[str] = None,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        timeout: Optional[float] = None,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        retry_policy: Optional[RetryPolicy] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
        metrics: Optional[MetricsSink] = None,
    ):
        """Initialize client.

        Args:
            base_url: System base URL (defaults to settings)
            site: Site segment of the OAuth2/FHIR paths
            client_id: OAuth2 client id
            client_secret: OAuth2 client secret
            timeout: Request timeout in seconds
            transport: Optional httpx transport (tests)
            sleep: Backoff sleep function
            clock: Wall clock used for token expiry
        """
        settings = get_settings()
        self.base_url = (base_url or settings.emr_base_url).rstrip("/")
        self.site = site or settings.emr_site
        self.client_id = client_id if client_id is not None else settings.emr_client_id
        self.client_secret = (
            client_secret if client_secret is not None else settings.emr_client_secret
        )
        self.redirect_uri = settings.emr_redirect_uri
        self.scope = settings.emr_scopes
        self.timeout = timeout or settings.emr_timeout
        self.token_expiry_margin = settings.token_expiry_margin

        self._rate_limiter = rate_limiter or SlidingWindowRateLimiter(
            max_requests=settings.emr_rate_limit_per_second, window=1.0
        )
        self._breaker = circuit_breaker or CircuitBreaker(
            name="emr",
            failure_threshold=settings.circuit_failure_threshold,
            reset_timeout=settings.circuit_reset_timeout,
            half_open_successes=settings.circuit_half_open_successes,
        )
        self._retry = retry_policy or RetryPolicy(
            max_attempts=settings.emr_max_retries,
            base_delay=settings.emr_retry_base_delay,
            max_delay=settings.emr_retry_max_delay,
        )
        self._transport = transport
        self._sleep = sleep
        self._clock = clock
        self._metrics = metrics or get_metrics()

        self._client: Optional[httpx.AsyncClient] = None
        self._access_token: Optional[str] = None
        self._refresh_token: Optional[str] = None
        self._token_expires_at: Optional[float] = None
        self._pkce: Optional[dict[str, str]] = None
        self._token_lock = asyncio.Lock()

    @property
    def fhir_url(self) -> str:
        return f"{self.base_url}/apis/{self.site}/fhir"

    @property
    def token_url(self) -> str:
        return f"{self.base_url}/oauth2/{self.site}/token"

    @property
    def circuit_breaker(self) -> CircuitBreaker:
        return self._breaker

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    # === Transport ===

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        status = response.status_code
        if status < 400:
            return

        detail = f"{response.request.method} {response.request.url.path} -> {status}"
        if status == 401:
            raise EMRAuthenticationError(f"Unauthorized: {detail}", status)
        if status == 404:
            raise EMRNotFoundError(f"Not found: {detail}", status)
        if status in (409, 412):
            raise AppointmentConflictError(f"Conflict: {detail}", status)
        if status == 429:
            raise EMRRateLimitedError(f"Rate limited: {detail}", status)
        if status >= 500:
            raise EMRTransientError(f"Server error: {detail}", status)
        raise EMRClientError(f"Request rejected: {detail}", status)

    async def _send(
        self,
        method: str,
        url: str,
        *,
        params: Any = None,
        json: Any = None,
        data: Optional[dict] = None,
        auth: Optional[httpx.Auth] = None,
        bearer: bool = True,
        content_type: str = "application/fhir+json",
    ) -> Any:
        await self._rate_limiter.acquire()
        client = await self._get_client()

        headers = {"Accept": content_type}
        if json is not None:
            headers["Content-Type"] = content_type
        if bearer and self._access_token:
            headers["Authorization"] = f"Bearer {self._access_token}"

        started = time.monotonic()
        try:
            response = await client.request(
                method,
                url,
                params=params,
                json=json,
                data=data,
                headers=headers,
                auth=auth or httpx.USE_CLIENT_DEFAULT,
            )
        except httpx.TimeoutException as e:
            self._metrics.increment("emr.errors", kind="timeout")
            raise EMRTransientError(f"Request timed out: {e}") from e
        except httpx.TransportError as e:
            self._metrics.increment("emr.errors", kind="network")
            raise EMRTransientError(f"Network error: {e}") from e
        finally:
            self._metrics.observe("emr.latency", time.monotonic() - started)

        self._raise_for_status(response)
        if not response.content:
            return None
        return response.json()

    async def _execute(
        self,
        operation: Callable[[], Awaitable[Any]],
        refresh_on_401: bool = True,
    ) -> Any:
        """Run an operation with retry, per-attempt circuit breaking and 401 refresh.

        A 401 gets one token renewal and one immediate retry; a second 401
        is raised to the caller.
        """
        attempt = 0
        refreshed = False
        while True:
            attempt += 1
            try:
                return await self._breaker.call(operation)
            except CircuitOpenError:
                self._metrics.increment("emr.circuit_rejections")
                raise
            except EMRAuthenticationError as e:
                if not refresh_on_401 or refreshed:
                    raise
                refreshed = True
                logger.warning("EMR request unauthorized, refreshing token")
                try:
                    await self._renew_token()
                except EMRError as refresh_error:
                    logger.error(f"Token refresh failed: {refresh_error}")
                    raise e
            except EMRError as e:
                if not e.retryable or attempt >= self._retry.max_attempts:
                    raise
                delay = self._retry.delay_for(attempt)
                logger.warning(
                    f"EMR request failed (attempt {attempt}/{self._retry.max_attempts}): {e}. "
                    f"Retrying in {delay:.1f}s"
                )
                self._metrics.increment("emr.retries")
                await self._sleep(delay)

    async def _fhir(
        self,
        method: str,
        resource: str,
        params: Any = None,
        json: Any = None,
    ) -> Any:
        await self.ensure_token()
        url = f"{self.fhir_url}{resource}"
        return await self._execute(
            lambda: self._send(method, url, params=params, json=json)
        )

    # === Tokens ===

    def _set_tokens(self, payload: dict) -> None:
        self._access_token = payload.get("access_token")
        self._refresh_token = payload.get("refresh_token") or self._refresh_token
        expires_in = int(payload.get("expires_in", 3600))
        self._token_expires_at = self._clock() + max(expires_in - self.token_expiry_margin, 0)

    def _clear_tokens(self) -> None:
        self._access_token = None
        self._refresh_token = None
        self._token_expires_at = None

    def _token_expired(self) -> bool:
        return self._token_expires_at is not None and self._token_expires_at <= self._clock()

    async def _token_request(self, data: dict, auth: Optional[httpx.Auth] = None) -> dict:
        try:
            payload = await self._execute(
                lambda: self._send(
                    "POST",
                    self.token_url,
                    data=data,
                    auth=auth,
                    bearer=False,
                    content_type="application/json",
                ),
                refresh_on_401=False,
            )
        except EMRClientError as e:
            raise EMRAuthenticationError(f"Token request failed: {e}", e.status_code) from e

        if not payload or "access_token" not in payload:
            raise EMRAuthenticationError("Token response missing access_token")
        self._set_tokens(payload)
        return payload

    async def authenticate(self) -> dict:
        """Client-credentials grant (server-to-server)."""
        payload = await self._token_request(
            {"grant_type": "client_credentials", "scope": self.scope},
            auth=httpx.BasicAuth(self.client_id, self.client_secret),
        )
        logger.info("Authenticated with client credentials")
        return payload

    async def refresh_access_token(self) -> dict:
        """Refresh-token grant. Clears tokens when the refresh is rejected."""
        if not self._refresh_token:
            raise EMRAuthenticationError("No refresh token available")
        try:
            payload = await self._token_request({
                "grant_type": "refresh_token",
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "refresh_token": self._refresh_token,
            })
        except EMRError:
            self._clear_tokens()
            raise
        logger.info("Refreshed access token")
        return payload

    async def _renew_token(self) -> None:
        if self._refresh_token:
            try:
                await self.refresh_access_token()
                return
            except EMRError as e:
                logger.warning(f"Refresh failed, falling back to client credentials: {e}")
        await self.authenticate()

    async def ensure_token(self) -> None:
        """Make sure a non-expired access token is cached."""
        async with self._token_lock:
            if not self._access_token:
                await self.authenticate()
            elif self._token_expired():
                await self._renew_token()

    def authorization_url(self) -> str:
        """Build an authorization-code URL with a fresh PKCE challenge."""
        verifier = secrets.token_urlsafe(96)[:128]
        challenge = (
            base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest())
            .rstrip(b"=")
            .decode()
        )
        state = secrets.token_urlsafe(24)[:32]
        self._pkce = {"verifier": verifier, "challenge": challenge, "state": state}

        params = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "scope": self.scope,
            "state": state,
            "code_challenge": challenge,
            "code_challenge_method": "S256",
        }
        return f"{self.base_url}/oauth2/{self.site}/authorize?{urlencode(params)}"

    async def exchange_code(self, code: str, state: str) -> dict:
        """Exchange an authorization code for tokens.

        Raises:
            EMRAuthenticationError: if ``state`` does not match the pending challenge
        """
        if not self._pkce or self._pkce["state"] != state:
            raise EMRAuthenticationError("Invalid state parameter")

        payload = await self._token_request({
            "grant_type": "authorization_code",
            "code": code,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "redirect_uri": self.redirect_uri,
            "code_verifier": self._pkce["verifier"],
        })
        self._pkce = None
        logger.info("Exchanged authorization code for tokens")
        return payload

    async def logout(self) -> None:
        """Best-effort token revocation, then drop cached tokens."""
        if self._access_token:
            try:
                await self._send("POST", f"{self.base_url}/oauth2/{self.site}/logout")
            except EMRError as e:
                logger.warning(f"Logout request failed: {e}")
        self._clear_tokens()

    # === Mapping ===

    def _to_appointment(self, resource: dict) -> AppointmentDetails:
        patient_id, patient_name = "", ""
        practitioner_id, practitioner_name = "", ""
        for participant in resource.get("participant") or []:
            actor = participant.get("actor") or {}
            ref = actor.get("reference", "")
            if ref.startswith("Patient/"):
                patient_id = ref.split("/", 1)[1]
                patient_name = actor.get("display", "")
            elif ref.startswith("Practitioner/"):
                practitioner_id = ref.split("/", 1)[1]
                practitioner_name = actor.get("display", "")

        confirmation = ""
        for identifier in resource.get("identifier") or []:
            if identifier.get("system") == CONFIRMATION_SYSTEM or not confirmation:
                confirmation = identifier.get("value", "")

        start = parse_datetime(resource.get("start"))
        end = parse_datetime(resource.get("end"))
        duration = resource.get("minutesDuration")
        if duration is None and start and end:
            duration = int((end - start).total_seconds() // 60)

        codings = (resource.get("appointmentType") or {}).get("coding") or []
        appointment_type = appointment_type_from_coding(codings[0] if codings else None)

        return AppointmentDetails(
            id=str(resource.get("id", "")),
            patient_id=patient_id,
            patient_name=patient_name,
            practitioner_id=practitioner_id,
            practitioner_name=practitioner_name,
            datetime=start,
            duration=int(duration or 0),
            type=appointment_type or "routine",
            status=_FHIR_STATUS.get(resource.get("status", "booked"), AppointmentStatus.BOOKED),
            reason=resource.get("description"),
            confirmation_number=confirmation,
        )

    @staticmethod
    def _type_coding(appointment_type: str) -> dict:
        return {
            "coding": [{
                "system": APPOINTMENT_TYPE_SYSTEM,
                "code": APPOINTMENT_TYPE_CODES.get(appointment_type, "ROUTINE"),
                "display": appointment_type,
            }]
        }

    @staticmethod
    def _entries(bundle: Optional[dict]) -> list[dict]:
        if not bundle:
            return []
        return [entry["resource"] for entry in bundle.get("entry") or [] if "resource" in entry]

    # === Slots ===

    async def get_free_slots(
        self,
        start: datetime,
        end: datetime,
        practitioner_id: Optional[str] = None,
        appointment_type: Optional[str] = None,
    ) -> list[Slot]:
        """Fetch free slots starting within ``[start, end]``."""
        params = [
            ("start", f"ge{_isoformat(start)}"),
            ("start", f"le{_isoformat(end)}"),
            ("status", "free"),
        ]
        if practitioner_id:
            params.append(("schedule.actor", f"Practitioner/{practitioner_id}"))
        if appointment_type:
            params.append(("appointment-type", appointment_type))

        bundle = await self._fhir("GET", "/Slot", params=params)
        slots = [Slot.from_fhir(r) for r in self._entries(bundle)]
        logger.debug(f"Fetched {len(slots)} free slots between {start} and {end}")
        return slots

    async def get_slot(self, slot_id: str) -> Optional[Slot]:
        try:
            resource = await self._fhir("GET", f"/Slot/{slot_id}")
        except EMRNotFoundError:
            return None
        return Slot.from_fhir(resource) if resource else None

    async def check_slot_available(self, slot_id: str) -> bool:
        """Re-read a slot and report whether it is still free."""
        slot = await self.get_slot(slot_id)
        return slot is not None and slot.status == SlotStatus.FREE

    # === Appointments ===

    async def get_appointment(self, appointment_id: str) -> Optional[AppointmentDetails]:
        try:
            resource = await self._fhir("GET", f"/Appointment/{appointment_id}")
        except EMRNotFoundError:
            return None
        return self._to_appointment(resource) if resource else None

    async def get_practitioner_appointments(
        self,
        practitioner_id: str,
        start: datetime,
        end: datetime,
    ) -> list[AppointmentDetails]:
        """Non-cancelled appointments for a practitioner within a window."""
        params = [
            ("practitioner", f"Practitioner/{practitioner_id}"),
            ("date", f"ge{_isoformat(start)}"),
            ("date", f"le{_isoformat(end)}"),
            ("status:not", "cancelled"),
        ]
        bundle = await self._fhir("GET", "/Appointment", params=params)
        return [self._to_appointment(r) for r in self._entries(bundle)]

    async def check_time_available(
        self,
        start: datetime,
        practitioner_id: str,
        duration: int,
        exclude_appointment_id: Optional[str] = None,
    ) -> bool:
        """Whether ``[start, start+duration)`` overlaps no existing appointment."""
        end = start + timedelta(minutes=duration)
        window_start = start - timedelta(hours=4)
        existing = await self.get_practitioner_appointments(practitioner_id, window_start, end)
        for appointment in existing:
            if appointment.id == exclude_appointment_id:
                continue
            if appointment.status == AppointmentStatus.CANCELLED:
                continue
            if start < appointment.end and end > appointment.datetime:
                logger.info(
                    f"Time {start} for practitioner {practitioner_id} overlaps "
                    f"appointment {appointment.id}"
                )
                return False
        return True

    async def create_appointment(
        self,
        start: datetime,
        end: datetime,
        patient_id: str,
        practitioner_id: str,
        appointment_type: str,
        confirmation_number: str,
        slot_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> AppointmentDetails:
        """Create an appointment.

        Raises:
            AppointmentConflictError: if the system rejects the time as taken
            EMRError: if the response does not identify the new appointment
        """
        resource: dict[str, Any] = {
            "resourceType": "Appointment",
            "status": "booked",
            "identifier": [{"system": CONFIRMATION_SYSTEM, "value": confirmation_number}],
            "appointmentType": self._type_coding(appointment_type),
            "start": _isoformat(start),
            "end": _isoformat(end),
            "minutesDuration": int((end - start).total_seconds() // 60),
            "participant": [
                {"actor": {"reference": f"Patient/{patient_id}"}, "status": "accepted"},
                {"actor": {"reference": f"Practitioner/{practitioner_id}"}, "status": "accepted"},
            ],
        }
        if slot_id:
            resource["slot"] = [{"reference": f"Slot/{slot_id}"}]
        if description:
            resource["description"] = description

        created = await self._fhir("POST", "/Appointment", json=resource)
        if not created or not created.get("id"):
            logger.error(f"Appointment create for patient {patient_id} returned no id")
            raise EMRError("Appointment created without an id")
        appointment = self._to_appointment(created)
        logger.info(f"Created appointment {appointment.id} for patient {patient_id}")
        return appointment

    async def update_appointment(
        self,
        appointment_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        practitioner_id: Optional[str] = None,
        appointment_type: Optional[str] = None,
        status: Optional[str] = None,
        confirmation_number: Optional[str] = None,
    ) -> AppointmentDetails:
        """Read-modify-write an appointment.

        Raises:
            EMRNotFoundError: if the appointment does not exist
            AppointmentConflictError: if the new time is rejected as taken
        """
        existing = await self._fhir("GET", f"/Appointment/{appointment_id}")
        if not existing:
            raise EMRNotFoundError(f"Appointment {appointment_id} not found", 404)

        updated = dict(existing)
        if start is not None:
            updated["start"] = _isoformat(start)
        if end is not None:
            updated["end"] = _isoformat(end)
        if start is not None and end is not None:
            updated["minutesDuration"] = int((end - start).total_seconds() // 60)
        if status is not None:
            updated["status"] = status
        if appointment_type is not None:
            updated["appointmentType"] = self._type_coding(appointment_type)
        if confirmation_number is not None:
            updated["identifier"] = [{"system": CONFIRMATION_SYSTEM, "value": confirmation_number}]
        if practitioner_id is not None:
            participants = []
            for participant in updated.get("participant") or []:
                ref = (participant.get("actor") or {}).get("reference", "")
                if ref.startswith("Practitioner/"):
                    participant = {
                        **participant,
                        "actor": {"reference": f"Practitioner/{practitioner_id}"},
                    }
                participants.append(participant)
            updated["participant"] = participants

        response = await self._fhir("PUT", f"/Appointment/{appointment_id}", json=updated)
        logger.info(f"Updated appointment {appointment_id}")
        return self._to_appointment(response or updated)

    async def cancel_appointment(self, appointment_id: str, reason: Optional[str] = None) -> None:
        """Mark an appointment cancelled."""
        existing = await self._fhir("GET", f"/Appointment/{appointment_id}")
        if not existing:
            raise EMRNotFoundError(f"Appointment {appointment_id} not found", 404)

        updated = {**existing, "status": "cancelled"}
        if reason:
            updated["cancelationReason"] = {"text": reason}
        await self._fhir("PUT", f"/Appointment/{appointment_id}", json=updated)
        logger.info(f"Cancelled appointment {appointment_id}")

    async def search_appointments(
        self,
        confirmation_number: Optional[str] = None,
        patient_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[AppointmentDetails]:
        params: list[tuple[str, str]] = []
        if confirmation_number:
            params.append(("identifier", confirmation_number))
        if patient_id:
            params.append(("patient", f"Patient/{patient_id}"))
        if start:
            params.append(("date", f"ge{_isoformat(start)}"))
        if end:
            params.append(("date", f"le{_isoformat(end)}"))

        bundle = await self._fhir("GET", "/Appointment", params=params)
        return [self._to_appointment(r) for r in self._entries(bundle)]

    # === Directory ===

    async def get_practitioners(self) -> list[Practitioner]:
        bundle = await self._fhir("GET", "/Practitioner", params={"active": "true"})
        return [Practitioner.from_fhir(r) for r in self._entries(bundle)]

    async def search_patients_by_phone(self, phone: str) -> list[PatientRecord]:
        bundle = await self._fhir("GET", "/Patient", params={"telecom": _digits(phone)})
        return [PatientRecord.from_fhir(r) for r in self._entries(bundle)]

    async def get_patient(self, patient_id: str) -> Optional[PatientRecord]:
        try:
            resource = await self._fhir("GET", f"/Patient/{patient_id}")
        except EMRNotFoundError:
            return None
        return PatientRecord.from_fhir(resource) if resource else None

    # === Diagnostics ===

    async def test_connection(self) -> dict:
        """Check token acquisition, metadata and read access."""
        try:
            await self.ensure_token()
            metadata = await self._fhir("GET", "/metadata") or {}
            await self._fhir("GET", "/Practitioner", params={"_count": "1"})
            return {
                "success": True,
                "message": "EMR API connection successful",
                "details": {
                    "fhir_version": metadata.get("fhirVersion"),
                    "server_version": (metadata.get("software") or {}).get("version"),
                    "circuit_state": self._breaker.state.value,
                },
            }
        except (EMRError, CircuitOpenError) as e:
            return {
                "success": False,
                "message": f"EMR API connection failed: {e}",
                "details": {"circuit_state": self._breaker.state.value},
            }


# Singleton instance
_emr_client: Optional[EMRClient] = None


def get_emr_client() -> EMRClient:
    """Get the EMR client singleton."""
    global _emr_client
    if _emr_client is None:
        _emr_client = EMRClient()
    return _emr_client


async def close_emr_client() -> None:
    global _emr_client
    if _emr_client is not None:
        await _emr_client.close()
        _emr_client = None
