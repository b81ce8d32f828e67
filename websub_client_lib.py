# websub_client_lib.py
import requests
import threading
import secrets
import string
import xml.etree.ElementTree as ET
from urllib.parse import urljoin

from models import (
    Accepted,
    DiscoveryOptions,
    DiscoveryResult,
    ServiceConfiguration,
    SubscriptionRequest,
    TransportConfig,
)

PATH_SEGMENT_LENGTH = 10
PATH_SEGMENT_ALPHABET = string.ascii_letters + string.digits
# Gemeinsamer Pfad, falls keine Zufallsquelle verfügbar ist. Kann bei mehreren
# Services auf demselben Listener kollidieren.
FALLBACK_PATH_SEGMENT = "websub"

# Obergrenze für Feed-Dokumente, die bei der Discovery geparst werden
MAX_FEED_SIZE = 1024 * 1024

HUB_RELATION = "hub"
SELF_RELATION = "self"


class WebSubError(Exception):
    """Basisklasse aller Fehler des Subscriber-Clients."""


class ConfigurationError(WebSubError):
    pass


class ResourceDiscoveryFailedError(WebSubError):
    pass


class SubscriptionInitiationFailedError(WebSubError):
    pass


class ListenerAttachError(WebSubError):
    pass


class HubRequestError(WebSubError):
    """Der Hub hat die Anfrage abgelehnt oder war nicht erreichbar."""

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.status_code = status_code


class MetricsStore:
    def __init__(self):
        self._lock = threading.Lock()
        self.successful_subscriptions_total = 0
        self.subscription_errors_total = 0
        self.discovery_errors_total = 0
        self.service_subscribed_status = {}

    def increment_successful_subscriptions(self):
        with self._lock:
            self.successful_subscriptions_total += 1

    def increment_subscription_errors(self):
        with self._lock:
            self.subscription_errors_total += 1

    def increment_discovery_errors(self):
        with self._lock:
            self.discovery_errors_total += 1

    def set_service_subscribed_status(self, service_name, status: int):
        with self._lock:
            self.service_subscribed_status[service_name] = status

    def get_metrics_data(self):
        with self._lock:
            return {
                "successful_subscriptions_total": self.successful_subscriptions_total,
                "subscription_errors_total": self.subscription_errors_total,
                "discovery_errors_total": self.discovery_errors_total,
                "service_subscribed_status": self.service_subscribed_status.copy()
            }


def generate_path_segment(logger=None) -> str:
    try:
        return "".join(secrets.choice(PATH_SEGMENT_ALPHABET) for _ in range(PATH_SEGMENT_LENGTH))
    except NotImplementedError:
        if logger:
            logger.warning(f"Keine Zufallsquelle verfügbar. Verwende festen Pfad '/{FALLBACK_PATH_SEGMENT}'.")
        return FALLBACK_PATH_SEGMENT


def build_path(path) -> str:
    """
    Baut aus einem einzelnen Segment oder einer Liste von Segmenten den Pfad,
    unter dem der Service gemountet wird, z.B. ["a", "b"] -> "/a/b".
    """
    if isinstance(path, str):
        segments = [path]
    else:
        segments = list(path)
    if not segments:
        raise ConfigurationError("Leerer Pfad: mindestens ein Pfadsegment ist erforderlich.")

    stripped = [str(segment).strip("/") for segment in segments]
    if not all(stripped):
        raise ConfigurationError(f"Ungültiger Pfad {path!r}: leere Pfadsegmente sind nicht erlaubt.")
    return "".join(f"/{segment}" for segment in stripped)


def resolve_callback_url(host: str, port: int, path=None, tls_enabled: bool = False, logger=None) -> str:
    generated = path is None
    if generated:
        path = generate_path_segment(logger=logger)

    scheme = "https" if tls_enabled else "http"
    callback_url = f"{scheme}://{host}:{port}{build_path(path)}"

    if generated and logger:
        logger.info(f"Kein Pfad angegeben. Generierte Callback-URL: {callback_url}")
    return callback_url


def _extract_header_links(response):
    links = []
    header = response.headers.get("Link")
    if not header:
        return links
    for link in requests.utils.parse_header_links(header):
        url = link.get("url", "").strip()
        rel = link.get("rel", "")
        if url and rel:
            links.append((url, rel))
    return links


def _extract_feed_links(response):
    content_type = response.headers.get("Content-Type", "")
    if "xml" not in content_type:
        return []
    if len(response.content) > MAX_FEED_SIZE:
        raise ResourceDiscoveryFailedError(
            f"Feed-Dokument von {response.url} ist zu groß ({len(response.content)} Bytes, maximal {MAX_FEED_SIZE})."
        )
    try:
        root = ET.fromstring(response.content)
    except ET.ParseError as e:
        raise ResourceDiscoveryFailedError(f"Ungültiges XML-Dokument von {response.url}: {e}")

    links = []
    for element in root.iter():
        # Atom-Namespace oder unqualifiziert, z.B. {http://www.w3.org/2005/Atom}link
        if element.tag.rsplit("}", 1)[-1] != "link":
            continue
        url = element.attrib.get("href", "").strip()
        rel = element.attrib.get("rel", "")
        if url and rel:
            links.append((url, rel))
    return links


def _single_relation(links, relation, base_url):
    found = []
    for url, rel in links:
        if relation in rel.split():
            absolute = urljoin(base_url, url)
            if absolute not in found:
                found.append(absolute)
    if not found:
        raise ResourceDiscoveryFailedError(f"Keine Link-Relation '{relation}' gefunden.")
    if len(found) > 1:
        raise ResourceDiscoveryFailedError(f"Mehrdeutige Link-Relation '{relation}': {', '.join(found)}")
    return found[0]


def discover_hub_and_topic(resource_url: str, options: DiscoveryOptions = None, logger=None) -> DiscoveryResult:
    options = options or DiscoveryOptions()

    headers = dict(options.transport.headers)
    if options.acceptMediaTypes:
        headers["Accept"] = ", ".join(options.acceptMediaTypes)
    if options.acceptLanguages:
        headers["Accept-Language"] = ", ".join(options.acceptLanguages)

    if logger:
        logger.info(f"Starte Discovery für {resource_url}")

    try:
        response = requests.get(resource_url, headers=headers, **options.transport.request_kwargs())
    except requests.exceptions.RequestException as e:
        raise ResourceDiscoveryFailedError(f"Discovery-Anfrage an {resource_url} fehlgeschlagen: {e}") from e

    if not 200 <= response.status_code < 300:
        raise ResourceDiscoveryFailedError(
            f"Discovery-Anfrage an {resource_url} fehlgeschlagen ({response.status_code}): {response.text[:200]}"
        )

    links = _extract_header_links(response)
    if not any(HUB_RELATION in rel.split() or SELF_RELATION in rel.split() for _, rel in links):
        links = _extract_feed_links(response)

    base_url = response.url or resource_url
    hub = _single_relation(links, HUB_RELATION, base_url)
    topic = _single_relation(links, SELF_RELATION, base_url)

    if logger:
        logger.info(f"Discovery erfolgreich. Hub: {hub}, Topic: {topic}")
    return DiscoveryResult(hub=hub, topic=topic)


def build_subscription_payload(request: SubscriptionRequest) -> dict:
    payload = {
        "hub.mode": request.mode,
        "hub.topic": request.topic,
        "hub.callback": request.callback,
    }
    if request.secret:
        payload["hub.secret"] = request.secret
    if request.leaseSeconds is not None:
        payload["hub.lease_seconds"] = str(request.leaseSeconds)
    return payload


def subscribe(request: SubscriptionRequest, transport: TransportConfig = None, logger=None) -> Accepted:
    transport = transport or TransportConfig()
    payload = build_subscription_payload(request)

    if logger:
        logger.info(f"Sende Subscription-Anfrage an {request.hub} für Topic {request.topic}")
        logged_payload = dict(payload)
        if "hub.secret" in logged_payload:
            logged_payload["hub.secret"] = "***"
        logger.debug(f"Payload: {logged_payload}")

    headers = dict(transport.headers)
    try:
        response = requests.post(request.hub, data=payload, headers=headers, **transport.request_kwargs())
    except requests.exceptions.RequestException as e:
        raise HubRequestError(f"Verbindungsfehler zum Hub {request.hub}: {e}") from e

    if not 200 <= response.status_code < 300:
        raise HubRequestError(
            f"Hub {request.hub} hat die Subscription abgelehnt ({response.status_code}): {response.text[:200]}",
            status_code=response.status_code,
        )

    return Accepted(hub=request.hub, topic=request.topic, callback=request.callback)


def subscription_lifecycle(service_name: str, config: ServiceConfiguration, callback_url: str,
                           metrics_store: MetricsStore = None, logger=None):
    """
    Führt die Subscription eines Services einmalig aus: optionale Discovery,
    danach die Subscription-Anfrage an den Hub. Kein Retry.

    Gibt Accepted zurück, oder None, wenn kein Ziel konfiguriert ist.
    """
    service_name = service_name.upper()
    target = config.target
    callback = config.callbackOverride or callback_url

    if target is None:
        print(f"[{service_name}] Kein Hub/Topic konfiguriert. Subscription wird übersprungen.")
        if logger:
            logger.warning("Kein Hub/Topic konfiguriert. Subscription wird übersprungen.")
        return None

    if target.kind == "discovery":
        try:
            discovery = discover_hub_and_topic(target.url, config.discoveryOptions, logger=logger)
        except ResourceDiscoveryFailedError as e:
            print(f"[{service_name}] Discovery fehlgeschlagen: {e}")
            if logger:
                logger.error(f"Discovery fehlgeschlagen: {e}")
            if metrics_store:
                metrics_store.increment_discovery_errors()
                metrics_store.set_service_subscribed_status(service_name, 0)
            raise
        hub, topic = discovery.hub, discovery.topic
    elif target.kind == "hubTopic":
        hub, topic = target.hub, target.topic
    else:
        raise ConfigurationError(f"Unbekannter Zieltyp für {service_name}: {target.kind}")

    request = SubscriptionRequest(
        hub=hub,
        topic=topic,
        callback=callback,
        secret=config.secret,
        leaseSeconds=config.leaseSeconds,
    )

    print(f"[{service_name}] Versuche Subscription bei {hub} für Topic {topic} mit Callback {callback}")
    try:
        outcome = subscribe(request, config.subscriptionTransportConfig, logger=logger)
    except HubRequestError as e:
        print(f"[{service_name}] Fehler bei der Subscription: {e}")
        if logger:
            logger.error(f"Fehler bei der Subscription: {e}")
        if metrics_store:
            metrics_store.increment_subscription_errors()
            metrics_store.set_service_subscribed_status(service_name, 0)
        raise SubscriptionInitiationFailedError(f"Subscription bei {hub} fehlgeschlagen: {e}") from e

    print(f"[{service_name}] Subscription-Anfrage vom Hub angenommen.")
    if logger:
        logger.info(f"Subscription-Anfrage angenommen. Hub: {outcome.hub}, Topic: {outcome.topic}, Callback: {outcome.callback}")
    if metrics_store:
        metrics_store.increment_successful_subscriptions()
        metrics_store.set_service_subscribed_status(service_name, 1)
    return outcome
