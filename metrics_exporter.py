# metrics_exporter.py
import json
import logging
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Dict, Any, Type

# MetricsStore aus der WebSub-Client-Bibliothek
from websub_client_lib import MetricsStore

# Logger für den Metrics Exporter
logger = logging.getLogger(__name__)


def generate_prometheus_metrics(metrics_store_instance: MetricsStore) -> str:
    """
    Generiert die Subscription-Metriken im Prometheus-Textformat.
    """
    metrics_data = metrics_store_instance.get_metrics_data()
    output = []

    output.append("# HELP python_websub_successful_subscriptions_total Total number of subscription requests accepted by a hub.")
    output.append("# TYPE python_websub_successful_subscriptions_total counter")
    output.append(f"python_websub_successful_subscriptions_total {metrics_data['successful_subscriptions_total']}")

    output.append("\n# HELP python_websub_subscription_errors_total Total number of failed subscription requests.")
    output.append("# TYPE python_websub_subscription_errors_total counter")
    output.append(f"python_websub_subscription_errors_total {metrics_data['subscription_errors_total']}")

    output.append("\n# HELP python_websub_discovery_errors_total Total number of failed hub/topic discoveries.")
    output.append("# TYPE python_websub_discovery_errors_total counter")
    output.append(f"python_websub_discovery_errors_total {metrics_data['discovery_errors_total']}")

    output.append("\n# HELP python_websub_service_subscribed Status of service subscription (1 if accepted by the hub, 0 otherwise).")
    output.append("# TYPE python_websub_service_subscribed gauge")
    for service_name, status in metrics_data['service_subscribed_status'].items():
        output.append(f"python_websub_service_subscribed{{service_name=\"{service_name}\"}} {status}")

    return "\n".join(output) + "\n"


def create_metrics_handler(metrics_store_instance: MetricsStore, app_config: Dict[str, Any]) -> Type[BaseHTTPRequestHandler]:
    """
    Fabrikfunktion für die Handler-Klasse, die Metriken und die geladene
    Service-Konfiguration ausliefert.
    """
    if metrics_store_instance is None:
        raise ValueError("metrics_store_instance darf nicht None sein")
    if app_config is None:
        raise ValueError("app_config darf nicht None sein")

    class CustomMetricsHandler(BaseHTTPRequestHandler):
        def log_message(self, format: str, *args: Any) -> None:
            """Unterdrückt das Zugriffslog von http.server"""
            pass

        def do_GET(self) -> None:
            try:
                if self.path == '/metrics':
                    body = generate_prometheus_metrics(metrics_store_instance).encode('utf-8')
                    self.send_response(200)
                    self.send_header('Content-type', 'text/plain; version=0.0.4; charset=utf-8')
                    self.end_headers()
                    self.wfile.write(body)
                elif self.path == '/info':
                    body = json.dumps(app_config, indent=2).encode('utf-8')
                    self.send_response(200)
                    self.send_header('Content-type', 'application/json; charset=utf-8')
                    self.end_headers()
                    self.wfile.write(body)
                else:
                    self.send_response(404)
                    self.end_headers()
                    self.wfile.write(b'Not Found')
            except Exception as e:
                logger.exception(f"Fehler beim Verarbeiten der Anfrage {self.path}: {e}")
                self.send_error(500, 'Internal Server Error')

    return CustomMetricsHandler


def create_metrics_server(metrics_store_instance: MetricsStore, app_config: Dict[str, Any], host: str, port: int) -> HTTPServer:
    handler_class = create_metrics_handler(metrics_store_instance, app_config)
    return HTTPServer((host, port), handler_class)


def run_metrics_web_server(metrics_store_instance: MetricsStore, app_config: Dict[str, Any], host: str, port: int) -> None:
    """
    Startet den Metrics-Webserver und blockiert bis zum Shutdown.
    Gedacht für einen eigenen Daemon-Thread.
    """
    httpd = create_metrics_server(metrics_store_instance, app_config, host, port)
    logger.info(f"Metrics web server running on http://{host}:{port}/metrics and http://{host}:{port}/info")

    try:
        httpd.serve_forever()
    except KeyboardInterrupt:
        logger.info("Metrics web server shutdown signal empfangen.")
    finally:
        httpd.server_close()
        logger.info("Metrics web server stopped.")
