"""Tests for DirectoryClient using httpx.MockTransport."""

from datetime import date

import httpx
import pytest

from carevisit.integrations.directory_client import DirectoryClient
from carevisit.scheduling.errors import DirectoryUnavailable

RESPONSES = {
    "/api/patients/client-1/header": {"success": True, "message": "", "data": {"clientName": "Doe, Jane"}},
    "/api/staff/staff-1/header": {"success": True, "message": "", "data": {"firstName": "Anna", "lastName": "Smith"}},
    "/api/staff/staff-2/header": {"success": True, "message": "", "data": {"staffName": "Ben Jones"}},
    "/api/authorizations/auth-1": {
        "success": True,
        "message": "",
        "data": {
            "id": 1,
            "patientId": "client-1",
            "startDate": "2024-01-01",
            "endDate": "2024-12-31T00:00:00",
            "maxUnits": 200,
            "totalUsed": 40.0,
        },
    },
    "/api/authorizations/auth-2": {
        "success": True,
        "message": "",
        "data": {"id": 2, "patientId": 7, "totalRemaining": 12},
    },
}


@pytest.fixture
def requests_seen() -> list[str]:
    return []


@pytest.fixture
def directory_client(requests_seen):
    def handler(request: httpx.Request) -> httpx.Response:
        requests_seen.append(request.url.path)
        if request.url.path == "/api/staff/broken/header":
            return httpx.Response(500, json={"success": False, "message": "boom", "data": None})
        payload = RESPONSES.get(request.url.path)
        if payload is None:
            return httpx.Response(404, json={"success": False, "message": "Not found", "data": None})
        return httpx.Response(200, json=payload)

    with DirectoryClient("http://directory.test/api", transport=httpx.MockTransport(handler)) as client:
        yield client


class TestNames:
    def test_client_name(self, directory_client):
        assert directory_client.client_name("client-1") == "Doe, Jane"

    def test_staff_name_prefers_last_first(self, directory_client):
        assert directory_client.staff_name("staff-1") == "Smith, Anna"
        assert directory_client.staff_name("staff-2") == "Ben Jones"

    def test_missing_records_return_none(self, directory_client):
        assert directory_client.client_name("client-404") is None
        assert directory_client.staff_name("staff-404") is None

    def test_lookups_are_cached(self, directory_client, requests_seen):
        directory_client.client_name("client-1")
        directory_client.client_name("client-1")

        assert requests_seen == ["/api/patients/client-1/header"]

    def test_cache_capped_at_size(self, requests_seen):
        def handler(request: httpx.Request) -> httpx.Response:
            requests_seen.append(request.url.path)
            return httpx.Response(200, json=RESPONSES["/api/patients/client-1/header"])

        transport = httpx.MockTransport(handler)
        with DirectoryClient("http://directory.test/api", transport=transport, cache_size=2) as client:
            for client_id in ("a", "b", "c", "a"):
                client.client_name(client_id)

            assert len(client._cache) == 2

        assert requests_seen.count("/api/patients/a/header") == 2

    def test_expired_entries_evicted(self, requests_seen):
        def handler(request: httpx.Request) -> httpx.Response:
            requests_seen.append(request.url.path)
            return httpx.Response(200, json=RESPONSES["/api/patients/client-1/header"])

        transport = httpx.MockTransport(handler)
        with DirectoryClient("http://directory.test/api", transport=transport, cache_ttl=0) as client:
            client.client_name("a")
            client.client_name("b")

            assert list(client._cache) == ["/patients/b/header"]


class TestAuthorizations:
    def test_remaining_units_from_max_and_used(self, directory_client):
        window = directory_client.get_authorization("auth-1")

        assert window.authorization_id == "1"
        assert window.client_id == "client-1"
        assert window.start_date == date(2024, 1, 1)
        assert window.end_date == date(2024, 12, 31)
        assert window.remaining_units == 160

    def test_open_window_with_total_remaining(self, directory_client):
        window = directory_client.get_authorization("auth-2")

        assert window.client_id == "7"
        assert (window.start_date, window.end_date) == (None, None)
        assert window.remaining_units == 12

    def test_missing_authorization(self, directory_client):
        assert directory_client.get_authorization("auth-404") is None


class TestFailures:
    def test_server_error_raises_directory_unavailable(self, directory_client):
        with pytest.raises(DirectoryUnavailable) as exc_info:
            directory_client.staff_name("broken")

        assert exc_info.value.code == "DIRECTORY_UNAVAILABLE"
        assert exc_info.value.resource == "/staff/broken/header"

    def test_transport_error_raises_directory_unavailable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with DirectoryClient("http://directory.test/api", transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(DirectoryUnavailable):
                client.client_name("client-1")
