# listener.py
import logging
import queue
import threading
import time
from urllib.parse import urlsplit

import uvicorn
from fastapi import APIRouter, FastAPI

from models import ServiceConfiguration
from websub_client_lib import (
    ConfigurationError,
    ListenerAttachError,
    MetricsStore,
    resolve_callback_url,
    subscription_lifecycle,
)

SERVER_STARTUP_POLL_INTERVAL = 0.05
SERVER_STARTUP_TIMEOUT = 30


class SubscriberService:
    def __init__(self, name: str, config: ServiceConfiguration, router: APIRouter = None, logger=None):
        self.name = name.upper()
        self.config = config
        self.router = router
        self.logger = logger
        self.callback_url = None


class SubscriberListener:
    """
    Hostet die Callback-Endpunkte der Services auf einer FastAPI-App und
    stößt beim Start die Subscription jedes Services an.
    """

    def __init__(self, port: int, host: str = "0.0.0.0", callback_host: str = "localhost",
                 ssl_certfile: str = None, ssl_keyfile: str = None,
                 metrics_store: MetricsStore = None, logger=None):
        self.port = port
        self.host = host
        self.callback_host = callback_host
        self.ssl_certfile = ssl_certfile
        self.ssl_keyfile = ssl_keyfile
        self.metrics_store = metrics_store or MetricsStore()
        self.logger = logger or logging.getLogger(__name__)

        self.app = FastAPI()
        self.services = {}
        self._paths = {}
        self._routes = {}
        self._server = None
        self._server_thread = None
        self._started = False

    @property
    def tls_enabled(self) -> bool:
        return self.ssl_certfile is not None

    def attach(self, service: SubscriberService, path=None) -> str:
        if service.config is None:
            raise ConfigurationError(f"Keine Subscriber-Konfiguration für Service {service.name} gefunden.")
        if self._started:
            raise ListenerAttachError(f"Listener läuft bereits. {service.name} kann nicht mehr angehängt werden.")
        if service.name in self.services:
            raise ListenerAttachError(f"Service {service.name} ist bereits angehängt.")

        logger = service.logger or self.logger
        callback_url = resolve_callback_url(self.callback_host, self.port, path,
                                            tls_enabled=self.tls_enabled, logger=logger)
        mount_path = urlsplit(callback_url).path

        if mount_path in self._paths:
            raise ListenerAttachError(
                f"Pfad {mount_path} ist bereits von Service {self._paths[mount_path]} belegt."
            )

        routes_before = len(self.app.router.routes)
        if service.router is not None:
            try:
                self.app.include_router(service.router, prefix=mount_path)
            except Exception as e:
                del self.app.router.routes[routes_before:]
                raise ListenerAttachError(f"Service {service.name} konnte nicht unter {mount_path} gemountet werden: {e}") from e
        else:
            logger.warning(f"Service {service.name} hat keinen Router. Unter {mount_path} werden keine Anfragen beantwortet.")

        service.callback_url = callback_url
        self.services[service.name] = service
        self._paths[mount_path] = service.name
        self._routes[service.name] = self.app.router.routes[routes_before:]
        self.metrics_store.set_service_subscribed_status(service.name, 0)
        logger.info(f"Service {service.name} angehängt unter {callback_url}")
        return callback_url

    def detach(self, service: SubscriberService):
        if self._started:
            raise ListenerAttachError(f"Listener läuft bereits. {service.name} kann nicht entfernt werden.")
        if self.services.pop(service.name, None) is None:
            raise ListenerAttachError(f"Service {service.name} ist nicht angehängt.")
        self._paths = {path: name for path, name in self._paths.items() if name != service.name}

        mounted = self._routes.pop(service.name, [])
        self.app.router.routes[:] = [route for route in self.app.router.routes
                                     if not any(route is own for own in mounted)]

    def _start_server(self):
        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            ssl_certfile=self.ssl_certfile,
            ssl_keyfile=self.ssl_keyfile,
            log_level="info",
        )
        self._server = uvicorn.Server(config)
        self._server_thread = threading.Thread(target=self._server.run, daemon=True)
        self._server_thread.start()

        deadline = time.monotonic() + SERVER_STARTUP_TIMEOUT
        while not self._server.started:
            if not self._server_thread.is_alive():
                raise ListenerAttachError(f"Listener konnte nicht an {self.host}:{self.port} gebunden werden.")
            if time.monotonic() > deadline:
                self._server.should_exit = True
                raise ListenerAttachError(
                    f"Listener auf {self.host}:{self.port} nicht innerhalb von {SERVER_STARTUP_TIMEOUT}s gestartet."
                )
            time.sleep(SERVER_STARTUP_POLL_INTERVAL)
        self.logger.info(f"Listener läuft auf {self.host}:{self.port} (TLS: {self.tls_enabled})")

    def start(self) -> dict:
        """
        Startet den HTTP-Server und danach die Subscriptions aller Services
        parallel, ein Thread pro Service. Der erste Fehler (in Reihenfolge des
        Anhängens) wird nach dem Ende aller Threads weitergereicht.
        """
        if self._started:
            raise ListenerAttachError("Listener wurde bereits gestartet.")
        self._start_server()
        self._started = True

        completion_queue = queue.Queue()
        threads = []

        def run(service):
            try:
                outcome = subscription_lifecycle(service.name, service.config, service.callback_url,
                                                 metrics_store=self.metrics_store,
                                                 logger=service.logger or self.logger)
                completion_queue.put((service.name, outcome, None))
            except Exception as e:
                completion_queue.put((service.name, None, e))

        for service in self.services.values():
            thread = threading.Thread(target=run, args=(service,), daemon=True)
            threads.append(thread)
            thread.start()
        for thread in threads:
            thread.join()

        outcomes = {}
        errors = {}
        while not completion_queue.empty():
            name, outcome, error = completion_queue.get()
            if error is not None:
                errors[name] = error
                self.logger.error(f"Subscription für {name} fehlgeschlagen: {error}")
            else:
                outcomes[name] = outcome

        for name in self.services:
            if name in errors:
                raise errors[name]
        return outcomes

    def graceful_stop(self, timeout: float = 5):
        if self._server is None:
            return
        self.logger.info("Stoppe Listener...")
        self._server.should_exit = True
        if self._server_thread is not None and self._server_thread.is_alive():
            self._server_thread.join(timeout=timeout)
        self.logger.info("Listener gestoppt.")

    def immediate_stop(self):
        if self._server is None:
            return
        self.logger.info("Beende Listener sofort.")
        self._server.force_exit = True
        self._server.should_exit = True
