# client.py
import importlib
import json
import threading
import time
import sys
import signal
import logging
import os

from pydantic import ValidationError

from listener import SubscriberListener, SubscriberService
from metrics_exporter import run_metrics_web_server
from models import ServiceEntry
from websub_client_lib import MetricsStore, WebSubError

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')

LISTENER_HOST = os.getenv("WEBSUB_LISTENER_HOST", "0.0.0.0")
LISTENER_PORT = int(os.getenv("WEBSUB_LISTENER_PORT", "8080"))
CALLBACK_HOST = os.getenv("WEBSUB_CALLBACK_HOST", "localhost")
SSL_CERTFILE = os.getenv("WEBSUB_SSL_CERTFILE")
SSL_KEYFILE = os.getenv("WEBSUB_SSL_KEYFILE")
METRICS_PORT = os.getenv("WEBSUB_METRICS_PORT")
CONFIG_FILE = os.getenv("WEBSUB_SERVICES_FILE", "services.json")

LOG_DIR = "logs"

# Jeder Client hat seine eigene Instanz von MetricsStore
metrics_store = MetricsStore()


def load_service_entries(config_file: str) -> list:
    with open(config_file, "r") as f:
        raw_entries = json.load(f)
    return [ServiceEntry.model_validate(entry) for entry in raw_entries]


def load_router(import_path: str):
    """Lädt einen APIRouter aus einer Angabe der Form 'modul:attribut'."""
    module_name, _, attribute = import_path.partition(":")
    if not module_name or not attribute:
        raise ValueError(f"Ungültige Router-Angabe '{import_path}', erwartet 'modul:attribut'.")
    module = importlib.import_module(module_name)
    return getattr(module, attribute)


def create_service_logger(service_name: str) -> logging.Logger:
    if not os.path.exists(LOG_DIR):
        os.makedirs(LOG_DIR)
    logger = logging.getLogger(service_name)
    logger.setLevel(logging.INFO)
    handler = logging.FileHandler(os.path.join(LOG_DIR, f"{service_name}.log"))
    handler.setFormatter(logging.Formatter('%(asctime)s - %(message)s'))
    logger.handlers = [handler]
    return logger


def build_listener(entries: list) -> SubscriberListener:
    listener = SubscriberListener(
        LISTENER_PORT,
        host=LISTENER_HOST,
        callback_host=CALLBACK_HOST,
        ssl_certfile=SSL_CERTFILE,
        ssl_keyfile=SSL_KEYFILE,
        metrics_store=metrics_store,
    )
    for entry in entries:
        service_name = entry.serviceName.upper()
        router = load_router(entry.router) if entry.router else None
        service = SubscriberService(service_name, entry.config, router=router,
                                    logger=create_service_logger(service_name))
        callback_url = listener.attach(service, entry.path)
        print(f"[{service_name}] Callback-URL: {callback_url}")
    return listener


def main():
    print(f"Dieser Client wird Services aus '{CONFIG_FILE}' verwalten.")

    try:
        entries = load_service_entries(CONFIG_FILE)
    except FileNotFoundError:
        print(f"Fehler: Konfigurationsdatei '{CONFIG_FILE}' nicht gefunden.")
        sys.exit(1)
    except json.JSONDecodeError:
        print(f"Fehler: Ungültiges JSON in der Konfigurationsdatei '{CONFIG_FILE}'. Bitte überprüfen Sie die Syntax.")
        sys.exit(1)
    except ValidationError as e:
        print(f"Fehler: Ungültige Service-Konfiguration in '{CONFIG_FILE}':\n{e}")
        sys.exit(1)

    try:
        listener = build_listener(entries)
    except (WebSubError, ImportError, AttributeError, ValueError) as e:
        print(f"Fehler beim Anhängen der Services: {e}")
        sys.exit(1)

    if METRICS_PORT:
        app_config = [entry.model_dump(mode="json", exclude={"config": {"secret"}}) for entry in entries]
        metrics_thread = threading.Thread(
            target=run_metrics_web_server,
            args=(metrics_store, app_config, LISTENER_HOST, int(METRICS_PORT)),
            daemon=True,
        )
        metrics_thread.start()

    def graceful_shutdown(signum, frame):
        print("\nEmpfange Herunterfahren-Signal. Stoppe Listener...")
        listener.graceful_stop()
        sys.exit(0)

    signal.signal(signal.SIGINT, graceful_shutdown)
    signal.signal(signal.SIGTERM, graceful_shutdown)

    try:
        listener.start()
    except WebSubError as e:
        logging.error(f"Start fehlgeschlagen: {e}")
        listener.immediate_stop()
        sys.exit(1)

    print("WebSub-Subscriber gestartet. Drücke STRG+C zum Beenden.")

    # Hauptthread am Leben halten, damit der Signal-Handler greifen kann
    while True:
        time.sleep(1)


if __name__ == "__main__":
    main()
