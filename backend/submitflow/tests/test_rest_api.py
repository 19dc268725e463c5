from datetime import date

import pytest
from django.contrib.auth import get_user_model
from django.urls import reverse
from rest_framework.test import APIClient

from submitflow import bootstrap
from submitflow.application.config import AsyncExecutionConfig
from submitflow.application.dispatcher import Dispatcher
from submitflow.application.retry import RetryWorker
from submitflow.domain.errors import StoreUnavailableError
from submitflow.domain.models.unit import CallableUnit, PermanentUnitError
from submitflow.infrastructure.identity.hasher import IdentityHasher
from submitflow.infrastructure.repositories.memory import InMemoryAsyncRequestStore
from submitflow.infrastructure.schedulers.local import LocalRetryScheduler
from submitflow.interfaces.rest import views

pytestmark = pytest.mark.django_db

VALID_BODY = {
    "vatNumber": "193054661",
    "periodKey": "24a1",
    "vatDue": "1000.00",
    "accessToken": "token-abc",
}


def _build_dispatcher(store) -> Dispatcher:
    config = AsyncExecutionConfig(
        sync_threshold_ms=25_000,
        base_delay_sec=0.01,
        max_delay_sec=0.02,
        poll_initial_interval_sec=0.01,
        poll_max_interval_sec=0.05,
    )
    scheduler = LocalRetryScheduler(max_workers=2)
    worker = RetryWorker(store=store, scheduler=scheduler, config=config)
    scheduler.attach(worker)
    return Dispatcher(store=store, hasher=IdentityHasher(salt="test-salt"), config=config, worker=worker)


@pytest.fixture
def dispatcher():
    instance = _build_dispatcher(InMemoryAsyncRequestStore())
    bootstrap.install(instance)
    yield instance
    bootstrap.install(None)
    instance.worker.scheduler.shutdown(wait=False)
    instance.shutdown(wait=False)


@pytest.fixture
def user():
    return get_user_model().objects.create_user(username="filer", password="pass12345")


@pytest.fixture
def api_client(user):
    client = APIClient()
    client.force_authenticate(user=user)
    return client


@pytest.fixture
def upstream(monkeypatch):
    """Replace the HMRC call with a unit whose behaviour each test chooses."""
    captured: dict = {}

    def install(func):
        def build(**kwargs):
            captured.update(kwargs)
            return CallableUnit(func, payload={"vatNumber": kwargs["vat_number"]})

        monkeypatch.setattr(views, "vat_return_unit", build)
        return captured

    return install


def test_submit_with_long_wait_returns_result(api_client, dispatcher, upstream):
    captured = upstream(lambda payload: {"formBundleNumber": "123456789012"})

    response = api_client.post(
        reverse("vat-return-submit"),
        VALID_BODY,
        format="json",
        HTTP_X_REQUEST_ID="req-200",
        HTTP_X_WAIT_TIME_MS="30000",
    )

    assert response.status_code == 200
    assert response["x-request-id"] == "req-200"
    assert response.json()["result"] == {"formBundleNumber": "123456789012"}
    assert captured["period_key"] == "24A1"


def test_submit_without_wait_returns_accepted_then_poll(api_client, dispatcher, upstream):
    upstream(lambda payload: {"formBundleNumber": "1"})

    response = api_client.post(
        reverse("vat-return-submit"), VALID_BODY, format="json", HTTP_X_REQUEST_ID="req-202"
    )

    assert response.status_code == 202
    assert response["Retry-After"] == "5"
    assert response["Location"].endswith("/api/async-requests/req-202/")
    assert response.json()["status"] in ("pending", "processing")

    poll = api_client.get(
        reverse("async-request-status", args=["req-202"]), HTTP_X_WAIT_TIME_MS="3000"
    )
    assert poll.status_code == 200
    assert poll.json()["status"] == "completed"
    assert poll["x-request-id"] == "req-202"


def test_request_id_is_generated_when_missing(api_client, dispatcher, upstream):
    upstream(lambda payload: "ok")
    response = api_client.post(
        reverse("vat-return-submit"), VALID_BODY, format="json", HTTP_X_WAIT_TIME_MS="25000"
    )
    assert response.status_code == 200
    assert len(response["x-request-id"]) == 36


def test_permanent_upstream_rejection_keeps_status_code(api_client, dispatcher, upstream):
    def rejected(payload):
        raise PermanentUnitError("INVALID_VRN", status_code=400, data={"code": "INVALID_VRN"})

    upstream(rejected)
    response = api_client.post(
        reverse("vat-return-submit"),
        VALID_BODY,
        format="json",
        HTTP_X_REQUEST_ID="req-400",
        HTTP_X_WAIT_TIME_MS="30000",
    )

    assert response.status_code == 400
    assert response.json()["error"]["kind"] == "permanent"


def test_failures_without_upstream_status_map_to_bad_gateway(api_client, dispatcher, upstream):
    def rejected(payload):
        raise PermanentUnitError("unexpected response shape")

    upstream(rejected)
    response = api_client.post(
        reverse("vat-return-submit"),
        VALID_BODY,
        format="json",
        HTTP_X_REQUEST_ID="req-502",
        HTTP_X_WAIT_TIME_MS="30000",
    )
    assert response.status_code == 502


def test_invalid_payload_is_rejected(api_client, dispatcher, upstream):
    upstream(lambda payload: "never")
    response = api_client.post(
        reverse("vat-return-submit"), {**VALID_BODY, "vatNumber": "12"}, format="json"
    )
    assert response.status_code == 400
    assert "vatNumber" in response.json()


def test_malformed_request_id_is_rejected(api_client, dispatcher, upstream):
    upstream(lambda payload: "never")
    response = api_client.post(
        reverse("vat-return-submit"), VALID_BODY, format="json", HTTP_X_REQUEST_ID="not valid!"
    )
    assert response.status_code == 400
    assert response["x-request-id"] == "not valid!"


def test_unknown_request_is_not_found(api_client, dispatcher):
    response = api_client.get(reverse("async-request-status", args=["missing"]))
    assert response.status_code == 404


def test_requests_are_private_to_their_caller(api_client, dispatcher, upstream):
    upstream(lambda payload: "mine")
    api_client.post(
        reverse("vat-return-submit"),
        VALID_BODY,
        format="json",
        HTTP_X_REQUEST_ID="req-private",
        HTTP_X_WAIT_TIME_MS="30000",
    )
    other = APIClient()
    other.force_authenticate(
        user=get_user_model().objects.create_user(username="other", password="pass12345")
    )
    response = other.get(reverse("async-request-status", args=["req-private"]))
    assert response.status_code == 404


def test_store_outage_returns_service_unavailable(api_client, upstream):
    class _BrokenStore(InMemoryAsyncRequestStore):
        def get(self, hashed_caller_id, request_id):
            raise StoreUnavailableError("table unreachable", operation="get")

    broken = _build_dispatcher(_BrokenStore())
    bootstrap.install(broken)
    upstream(lambda payload: "never")
    try:
        response = api_client.post(
            reverse("vat-return-submit"), VALID_BODY, format="json", HTTP_X_REQUEST_ID="req-503"
        )
    finally:
        bootstrap.install(None)
        broken.worker.scheduler.shutdown()
        broken.shutdown()
    assert response.status_code == 503


def test_without_store_submissions_complete_synchronously(api_client, upstream):
    fallback = Dispatcher(store=None, hasher=IdentityHasher(), config=AsyncExecutionConfig())
    bootstrap.install(fallback)
    upstream(lambda payload: "direct")
    try:
        response = api_client.post(reverse("vat-return-submit"), VALID_BODY, format="json")
    finally:
        bootstrap.install(None)
        fallback.shutdown()
    assert response.status_code == 200
    assert response.json()["result"] == "direct"


def test_authentication_is_required(dispatcher):
    response = APIClient().post(reverse("vat-return-submit"), VALID_BODY, format="json")
    assert response.status_code in (401, 403)


@pytest.fixture
def obligations_upstream(monkeypatch):
    captured: dict = {}

    def build(**kwargs):
        captured.update(kwargs)
        return CallableUnit(
            lambda payload: {"obligations": [{"periodKey": "24A1", "status": "O"}]},
            payload={"vrn": kwargs["vat_number"]},
        )

    monkeypatch.setattr(views, "vat_obligations_unit", build)
    return captured


def test_obligations_query_runs_through_dispatcher(api_client, dispatcher, obligations_upstream):
    response = api_client.get(
        reverse("vat-obligations"),
        {"vrn": "193054661", "from": "2024-01-01", "to": "2024-03-31", "status": "O"},
        HTTP_X_HMRC_ACCESS_TOKEN="token-abc",
        HTTP_X_REQUEST_ID="obl-1",
        HTTP_X_WAIT_TIME_MS="30000",
    )

    assert response.status_code == 200
    assert response.json()["result"]["obligations"][0]["periodKey"] == "24A1"
    assert obligations_upstream["date_from"] == date(2024, 1, 1)
    assert obligations_upstream["date_to"] == date(2024, 3, 31)
    assert obligations_upstream["status"] == "O"
    assert obligations_upstream["access_token"] == "token-abc"

    poll = api_client.get(reverse("async-request-status", args=["obl-1"]))
    assert poll.json()["status"] == "completed"


def test_obligations_range_defaults_to_current_year(api_client, dispatcher, obligations_upstream):
    response = api_client.get(
        reverse("vat-obligations"),
        {"vrn": "193054661"},
        HTTP_X_HMRC_ACCESS_TOKEN="token-abc",
        HTTP_X_WAIT_TIME_MS="30000",
    )

    assert response.status_code == 200
    assert obligations_upstream["date_from"].month == 1
    assert obligations_upstream["date_from"].day == 1
    assert obligations_upstream["date_to"] >= obligations_upstream["date_from"]
    assert obligations_upstream["status"] is None


def test_obligations_query_is_validated(api_client, dispatcher, obligations_upstream):
    url = reverse("vat-obligations")

    bad_vrn = api_client.get(url, {"vrn": "12345678"}, HTTP_X_HMRC_ACCESS_TOKEN="t")
    assert bad_vrn.status_code == 400
    assert "vrn" in bad_vrn.json()

    reversed_range = api_client.get(
        url,
        {"vrn": "193054661", "from": "2024-06-01", "to": "2024-01-01"},
        HTTP_X_HMRC_ACCESS_TOKEN="t",
    )
    assert reversed_range.status_code == 400

    no_token = api_client.get(url, {"vrn": "193054661"})
    assert no_token.status_code == 400
    assert obligations_upstream == {}
