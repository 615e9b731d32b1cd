"""
Practice Scheduler Tests

Unit tests for the scheduling services live in tests/unit; test_api.py
exercises the HTTP layer. Redis, the EMR and the clock are replaced by the
in-memory fakes in conftest.py and factories.py, so no services are needed.

Running Tests:
    # Run everything
    pytest -v

    # Run one module
    pytest tests/unit/test_booking.py -v

Test Coverage:
    - EMR client retries, circuit breaker and rate limiting
    - Availability, business rules and conflict alternatives
    - Booking transactions, slot leases and rollback
    - Reschedule, cancellation and type change
    - Waitlist matching, offers and deadlines
    - Lookup, verification and staff notifications
"""
