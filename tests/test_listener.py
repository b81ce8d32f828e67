"""Tests für den Listener: Anhängen, Start, Stopp."""

import logging
import re
import threading
from unittest.mock import MagicMock, patch

import pytest
from fastapi import APIRouter
from fastapi.testclient import TestClient

import listener as listener_module
from listener import SubscriberListener, SubscriberService
from models import Accepted, DiscoveryTarget, HubTopicTarget, ServiceConfiguration
from websub_client_lib import (
    ConfigurationError,
    ListenerAttachError,
    ResourceDiscoveryFailedError,
    SubscriptionInitiationFailedError,
)

HUB = "https://hub.example.org/"
TOPIC = "https://example.org/feed"


def hub_topic_service(name="news", **kwargs):
    return SubscriberService(name, ServiceConfiguration(target=HubTopicTarget(hub=HUB, topic=TOPIC)), **kwargs)


def test_attach_without_configuration_fails():
    listener = SubscriberListener(8080)
    with pytest.raises(ConfigurationError):
        listener.attach(SubscriberService("news", None))


def test_attach_generates_path_once():
    listener = SubscriberListener(8080)
    service = hub_topic_service()

    callback_url = listener.attach(service)

    assert re.fullmatch(r"http://localhost:8080/[A-Za-z0-9]{10}", callback_url)
    assert service.callback_url == callback_url


def test_attach_uses_tls_scheme():
    listener = SubscriberListener(9443, callback_host="subscriber.example.org", ssl_certfile="cert.pem", ssl_keyfile="key.pem")
    assert listener.attach(hub_topic_service(), ["websub", "news"]) == "https://subscriber.example.org:9443/websub/news"


def test_attach_duplicate_path_fails():
    listener = SubscriberListener(8080)
    listener.attach(hub_topic_service("a"), "cb")
    with pytest.raises(ListenerAttachError, match="/cb"):
        listener.attach(hub_topic_service("b"), "cb")


def test_attach_same_service_twice_fails():
    listener = SubscriberListener(8080)
    listener.attach(hub_topic_service(), "one")
    with pytest.raises(ListenerAttachError):
        listener.attach(hub_topic_service(), "two")


def test_detach_frees_path():
    listener = SubscriberListener(8080)
    service = hub_topic_service()
    listener.attach(service, "cb")
    listener.detach(service)
    listener.attach(hub_topic_service("other"), "cb")
    assert list(listener.services) == ["OTHER"]


def owner_router(owner):
    router = APIRouter()

    @router.get("")
    def who():
        return {"owner": owner}

    return router


def test_detach_unmounts_router():
    """Nach dem Entfernen antwortet unter dem Pfad der neue Service, nicht der alte."""
    listener = SubscriberListener(8080)
    old = hub_topic_service("old", router=owner_router("old"))
    listener.attach(old, "cb")
    listener.detach(old)

    client = TestClient(listener.app)
    assert client.get("/cb").status_code == 404

    listener.attach(hub_topic_service("new", router=owner_router("new")), "cb")
    assert client.get("/cb").json() == {"owner": "new"}


def test_detach_keeps_other_services_mounted():
    listener = SubscriberListener(8080)
    first = hub_topic_service("first", router=owner_router("first"))
    listener.attach(first, "one")
    listener.attach(hub_topic_service("second", router=owner_router("second")), "two")

    listener.detach(first)

    client = TestClient(listener.app)
    assert client.get("/one").status_code == 404
    assert client.get("/two").json() == {"owner": "second"}


@pytest.mark.parametrize("path", ["", "/", [], ["a", ""]])
def test_attach_with_empty_path_fails(path):
    listener = SubscriberListener(8080)
    with pytest.raises(ConfigurationError):
        listener.attach(hub_topic_service(), path)
    assert listener.services == {}


def test_router_is_mounted_under_callback_path():
    router = APIRouter()

    @router.get("")
    def verify(challenge: str = ""):
        return {"challenge": challenge}

    listener = SubscriberListener(8080)
    listener.attach(hub_topic_service(router=router), "cb")

    response = TestClient(listener.app).get("/cb", params={"challenge": "abc"})
    assert response.status_code == 200
    assert response.json() == {"challenge": "abc"}


def test_end_to_end_explicit_target(mock_server, mock_get, mock_post, make_response, caplog):
    """Expliziter Hub/Topic, Port 8080, kein TLS, kein Pfad."""
    mock_post.return_value = make_response(status_code=202, url=HUB)
    listener = SubscriberListener(8080, callback_host="host", logger=logging.getLogger("e2e"))
    callback_url = listener.attach(hub_topic_service())

    with caplog.at_level(logging.INFO, logger="e2e"):
        outcomes = listener.start()

    assert re.fullmatch(r"http://host:8080/[A-Za-z0-9]{10}", callback_url)
    assert outcomes == {"NEWS": Accepted(hub=HUB, topic=TOPIC, callback=callback_url)}
    mock_get.assert_not_called()
    args, kwargs = mock_post.call_args
    assert args == ("https://hub.example.org/",)
    assert kwargs["data"]["hub.topic"] == "https://example.org/feed"
    assert kwargs["data"]["hub.callback"] == callback_url
    assert f"Hub: {HUB}, Topic: {TOPIC}, Callback: {callback_url}" in caplog.text
    mock_server.run.assert_called_once()


def test_end_to_end_discovery_without_hub(mock_server, mock_get, mock_post, make_response):
    mock_get.return_value = make_response(headers={"Link": f'<{TOPIC}>; rel="self"'})
    listener = SubscriberListener(8080)
    listener.attach(SubscriberService("news", ServiceConfiguration(target=DiscoveryTarget(url=TOPIC))))

    with pytest.raises(ResourceDiscoveryFailedError):
        listener.start()
    mock_post.assert_not_called()


def test_no_target_starts_without_subscription(mock_server, mock_post):
    listener = SubscriberListener(8080)
    listener.attach(SubscriberService("news", ServiceConfiguration()))

    assert listener.start() == {"NEWS": None}
    mock_post.assert_not_called()


def test_start_runs_services_independently(mock_server, mock_post, make_response):
    def hub_response(url, **kwargs):
        if url == "https://bad-hub.example.org/":
            return make_response(status_code=500, url=url)
        return make_response(status_code=202, url=url)

    mock_post.side_effect = hub_response
    listener = SubscriberListener(8080)
    listener.attach(hub_topic_service("good"))
    listener.attach(SubscriberService("bad", ServiceConfiguration(
        target=HubTopicTarget(hub="https://bad-hub.example.org/", topic=TOPIC))))

    with pytest.raises(SubscriptionInitiationFailedError):
        listener.start()

    assert mock_post.call_count == 2
    assert listener.metrics_store.get_metrics_data()["service_subscribed_status"] == {"GOOD": 1, "BAD": 0}


def test_start_twice_fails(mock_server):
    listener = SubscriberListener(8080)
    listener.start()
    with pytest.raises(ListenerAttachError):
        listener.start()


def test_attach_after_start_fails(mock_server):
    listener = SubscriberListener(8080)
    listener.start()
    with pytest.raises(ListenerAttachError):
        listener.attach(hub_topic_service())


def test_server_that_cannot_bind_fails_start(mock_post):
    server = MagicMock()
    server.started = False
    with patch("listener.uvicorn.Server", return_value=server):
        listener = SubscriberListener(8080)
        listener.attach(hub_topic_service())
        with pytest.raises(ListenerAttachError, match="8080"):
            listener.start()
    mock_post.assert_not_called()


def test_server_that_never_starts_times_out(mock_post, monkeypatch):
    release = threading.Event()
    server = MagicMock()
    server.started = False
    server.run.side_effect = lambda: release.wait(5)
    monkeypatch.setattr(listener_module, "SERVER_STARTUP_TIMEOUT", 0.2)

    with patch("listener.uvicorn.Server", return_value=server):
        listener = SubscriberListener(8080)
        listener.attach(hub_topic_service())
        try:
            with pytest.raises(ListenerAttachError, match="nicht innerhalb"):
                listener.start()
        finally:
            release.set()

    assert server.should_exit is True
    mock_post.assert_not_called()


def test_graceful_stop_signals_server(mock_server):
    listener = SubscriberListener(8080)
    listener.start()
    listener.graceful_stop()
    assert mock_server.should_exit is True


def test_immediate_stop_forces_exit(mock_server):
    listener = SubscriberListener(8080)
    listener.start()
    listener.immediate_stop()
    assert mock_server.force_exit is True
    assert mock_server.should_exit is True


def test_stop_before_start_is_noop():
    listener = SubscriberListener(8080)
    listener.graceful_stop()
    listener.immediate_stop()
