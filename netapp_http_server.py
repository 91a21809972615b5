import logging
import socket
from socketserver import ThreadingMixIn
from typing import Callable
from wsgiref.simple_server import make_server, WSGIServer, WSGIRequestHandler
from prometheus_client import make_wsgi_app

logger = logging.getLogger(__name__)

METRICS_PATH = '/metrics'

def _get_best_family(address, port):
    """Picks the socket family matching the bind address, so IPv6 addresses work too."""
    infos = socket.getaddrinfo(address, port)
    family, _, _, _, sockaddr = next(iter(infos))
    return family, sockaddr[0]

class _SilentHandler(WSGIRequestHandler):
    def log_message(self, format, *args):
        """Scrapes are not logged."""

class ThreadingWSGIServer(ThreadingMixIn, WSGIServer):
    """One thread per scrape request."""
    daemon_threads = True

def make_exporter_app(registry) -> Callable:
    metrics_app = make_wsgi_app(registry)

    def exporter_app(environ, start_response):
        if environ.get('PATH_INFO') == METRICS_PATH:
            return metrics_app(environ, start_response)
        # everything else points browsers at the metrics page
        start_response('301 Moved Permanently', [('Location', METRICS_PATH), ('Content-Type', 'text/plain')])
        return [b'']

    return exporter_app

def start_wsgi_server(registry, port: int, addr: str = '0.0.0.0'):
    class ExporterServer(ThreadingWSGIServer):
        """ThreadingWSGIServer with an address family picked for addr."""

    ExporterServer.address_family, addr = _get_best_family(addr, port)
    httpd = make_server(addr, port, make_exporter_app(registry), ExporterServer, handler_class=_SilentHandler)
    logger.debug(f'Listening on {addr}:{port}')
    httpd.serve_forever()
