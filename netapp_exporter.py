#!/usr/local/bin/python3
import concurrent.futures
import functools
import argparse
import logging
import queue
import math
import time
import sys
import os
import re
from typing import NamedTuple
from prometheus_client import (CollectorRegistry, Counter, Info, Summary, PlatformCollector, ProcessCollector,
                               disable_created_metrics, generate_latest)
from prometheus_client.core import Metric, Sample

from ontap_client import OntapClient, DEFAULT_TIMEOUT
from netapp_http_server import start_wsgi_server

logger = logging.getLogger(__name__)

__version__ = '0.1.0'

NAMESPACE = 'netapp_ontap'
GAUGE = 'gauge'
COUNTER = 'counter'

DEFAULT_PORT = 9099
VOLUME_INFO_MAX_RECORDS = 100
DISK_BUSY_BASE_COUNTER = 'base_for_disk_busy'

_DECIMAL = re.compile(r'[+-]?(([0-9]+\.?[0-9]*|\.[0-9]+)([eE][+-]?[0-9]+)?|inf|infinity|nan)', re.IGNORECASE)

def parse_args(argv=None):
    parser = argparse.ArgumentParser(description='Prometheus exporter for NetApp ONTAP clusters')
    def add_argument(key, *args, **kwargs):
        if os.environ.get(key):
            kwargs['required'] = False
            if kwargs.get('action') == 'store_true':
                kwargs['default'] = os.environ[key] == 'True'
            elif 'type' in kwargs:
                # an unparsable environment value keeps the built-in default
                try:
                    kwargs['default'] = kwargs['type'](os.environ[key])
                except ValueError:
                    logger.warning(f'Ignoring invalid {key}={os.environ[key]!r}, using {kwargs.get("default")}')
            else:
                kwargs['default'] = os.environ[key]
        parser.add_argument(*args, **kwargs)

    add_argument('HOST', '--host', required=True, help='ONTAP cluster management address or host name')
    add_argument('USERID', '--user', required=True, help='ONTAP user name')
    add_argument('PASSWORD', '--password', required=True, help='ONTAP password')
    add_argument('BIND_ADDRESS', '--bind-address', default='0.0.0.0', help='IP address to bind on the host')
    add_argument('PORT', '--port', default=DEFAULT_PORT, type=int,
                 help='Port to listen to for incoming connections from Prometheus')
    add_argument('TIMEOUT', '--timeout', default=DEFAULT_TIMEOUT, type=float,
                 help='Seconds to wait for a single ONTAP API request')
    add_argument('CERT_FILE', '--cert-file', help='Path to custom SSL certificate for the ONTAP cluster')
    add_argument('CERT_SERVER', '--cert-server-name', help='Address of custom SSL certificate authority')
    add_argument('DEBUG', '--debug', action='store_true', help='Log every ONTAP API request')
    add_argument('TEST', '--test', action='store_true',
                 help='Run the collector once and indicate whether it succeeded in the return code')
    return parser.parse_args(argv)

def to_float(value):
    """
    Coerces a backend field to a sample value. Anything that is not a plain
    decimal number (including array counters like '0,3,1') becomes 0.
    """
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str) or not _DECIMAL.fullmatch(value):
        return 0.0
    result = float(value)
    if math.isinf(result) and 'inf' not in value.lower(): # out of range
        return 0.0
    return result

class MetricIdentity(NamedTuple):
    name: str
    documentation: str
    labels: dict
    kind: str
    value: float

def build_metric(fragment, documentation, labels, value, kind=GAUGE):
    return MetricIdentity(name=f'{NAMESPACE}_{fragment}', documentation=documentation,
                          labels=dict(labels), kind=kind, value=float(value))

def build_state_metric(fragment, documentation, labels, flag):
    return build_metric(fragment, documentation, labels, 1 if flag else 0)

def disk_counter_fragment(counter):
    # dashboards depend on the base counter being the only disk_ prefixed one
    if counter == DISK_BUSY_BASE_COUNTER:
        return 'disk_' + counter
    return counter

class ExporterMetrics(object):
    def __init__(self, registry=None):
        self.scrape_duration = Summary('netapp_exporter_scrape_duration_seconds', 'Total collection time',
                                       registry=registry)
        self.collection_errors = Counter('netapp_exporter_collection_errors', 'Errors raised during collection',
                                         registry=registry)
        self.request_latency = Summary('netapp_exporter_backend_request_latency_seconds', 'ONTAP API Request Time',
                                       registry=registry)

class ResourceCollector(object):
    name = None

    def __init__(self, client_factory, cluster_name, metrics):
        self._client_factory = client_factory
        self._cluster_name = cluster_name
        self._metrics = metrics

    def run(self, emit):
        with self._client_factory() as client:
            for identity in self._collect(client):
                emit(identity)

    def _collect(self, client):
        raise NotImplementedError()

    def _fetch(self, what, fetch, *args):
        """Returns the fetched records, or None after logging a failed fetch."""
        try:
            return fetch(*args)
        except Exception as e:
            self._metrics.collection_errors.inc()
            logger.exception(f'Failed fetching {what}: {e}')
            return None

class DiskCollector(ResourceCollector):
    name = 'disk'

    def _collect(self, client):
        for sample in self._fetch('disk performance', client.get_disk_perf) or []:
            labels = {'disk': sample.object_name, 'cluster': self._cluster_name}
            documentation = 'Disk busy base counter' if sample.counter == DISK_BUSY_BASE_COUNTER else 'Disk busy counter'
            yield build_metric(disk_counter_fragment(sample.counter), documentation, labels, to_float(sample.value))

        for disk in self._fetch('disk info', client.get_disk_info) or []:
            labels = {'disk': disk.name, 'cluster': self._cluster_name}
            yield build_state_metric('disk_online', 'Disk Online Status', labels, disk.online)
            yield build_state_metric('disk_spare', 'Disk Spare Status. 1 == Spare Disk', labels, disk.spare)
            yield build_state_metric('disk_prefailed', 'Disk Prefailed Status. 1 == Failed', labels, disk.prefailed)

class VolumeCollector(ResourceCollector):
    name = 'volume'

    INFO_FIELDS = [('volume_size_total', 'Volume size total', 'size_total'),
                   ('volume_size_used', 'Volume size used', 'size_used'),
                   ('volume_size_free', 'Volume size free', 'size_free'),
                   ('volume_snap_used', 'Volume percent used snapshot', 'snap_percent_used'),
                   ('volume_snap_reserved', 'Volume percent reserved snapshot', 'snap_percent_reserve')]

    def _collect(self, client):
        # perf instances only carry the volume name, the aggregate comes from this lookup
        volume_to_aggr = self._fetch('volume to aggregate map', client.get_volume_to_aggr_map) or {}

        for sample in self._fetch('volume performance', client.get_volume_perf) or []:
            labels = {'volume': sample.object_name,
                      'aggr': volume_to_aggr.get(sample.object_name, ''),
                      'cluster': self._cluster_name}
            yield build_metric('volume_' + sample.counter, 'Volume Performance counter', labels,
                               to_float(sample.value), kind=COUNTER)

        for volume in self._fetch('volume info', client.get_volume_info, VOLUME_INFO_MAX_RECORDS) or []:
            labels = {'volume': volume.name,
                      'aggr': volume.aggr or volume_to_aggr.get(volume.name, ''),
                      'cluster': self._cluster_name}
            yield build_state_metric('volume_state', 'Volume State. 1 == Online', labels,
                                     (volume.state or '').lower() == 'online')
            for fragment, documentation, field in self.INFO_FIELDS:
                yield build_metric(fragment, documentation, labels, to_float(getattr(volume, field)))

class AggregateCollector(ResourceCollector):
    name = 'aggregate'

    def _collect(self, client):
        samples = self._fetch('aggregate performance', client.get_aggr_perf)
        if samples is None:
            return
        for sample in samples:
            labels = {'aggr': sample.object_name, 'cluster': self._cluster_name}
            yield build_metric('aggr_' + sample.counter, 'Aggregate Performance counter ' + sample.counter, labels,
                               to_float(sample.value), kind=COUNTER)

_COLLECTOR_DONE = object()

class CollectionOrchestrator(object):
    """
    Runs one scrape: resolves the cluster name, then runs every resource
    collector on its own thread and streams their metric identities as they
    arrive. Each collector opens its own ONTAP connection.
    """
    collector_classes = [DiskCollector, VolumeCollector, AggregateCollector]

    def __init__(self, client_factory, metrics=None):
        self._client_factory = client_factory
        self._metrics = metrics or ExporterMetrics()

    def _resolve_cluster_name(self):
        try:
            with self._client_factory() as client:
                return client.get_cluster_name() or ''
        except Exception as e:
            self._metrics.collection_errors.inc()
            logger.exception(f'Failed resolving cluster name: {e}')
            return ''

    def _run(self, collector, samples):
        try:
            collector.run(samples.put)
        except Exception as e:
            self._metrics.collection_errors.inc()
            logger.exception(f'Caught exception while collecting {collector.name} metrics: {e}')
        finally:
            samples.put(_COLLECTOR_DONE)

    def scrape(self):
        start = time.monotonic()
        with self._metrics.scrape_duration.time():
            cluster_name = self._resolve_cluster_name()
            collectors = [cls(self._client_factory, cluster_name, self._metrics) for cls in self.collector_classes]
            samples = queue.Queue()
            with concurrent.futures.ThreadPoolExecutor(max_workers=len(collectors),
                                                       thread_name_prefix='collector') as executor:
                for collector in collectors:
                    executor.submit(self._run, collector, samples)
                pending = len(collectors)
                while pending:
                    item = samples.get()
                    if item is _COLLECTOR_DONE:
                        pending -= 1
                    else:
                        yield item
        logger.debug(f'Scrape of cluster "{cluster_name}" took {time.monotonic() - start:.3f}s')

class MetricFamily(Metric):
    """Family whose samples carry their own label dictionaries."""
    def __init__(self, name, documentation, typ):
        Metric.__init__(self, name, documentation, typ)
        self._sample_name = self.name + '_total' if self.type == COUNTER else self.name

    def add_sample(self, labels, value):
        self.samples.append(Sample(self._sample_name, labels, value, None))

class NetAppCollector(object):
    def __init__(self, orchestrator):
        self._orchestrator = orchestrator

    def collect(self):
        families = {}
        seen = set()
        for identity in self._orchestrator.scrape():
            key = (identity.name, tuple(sorted(identity.labels.items())))
            if key in seen:
                logger.debug(f'Dropping duplicate sample {identity.name} {identity.labels}')
                continue
            seen.add(key)
            family = families.get(identity.name)
            if family is None:
                family = families[identity.name] = MetricFamily(identity.name, identity.documentation, identity.kind)
            family.add_sample(identity.labels, identity.value)
        yield from families.values()

    def describe(self):
        # the metric set depends on what the cluster reports
        return list(self.collect())

def main():
    args = parse_args()
    logging.basicConfig(format='%(asctime)s %(threadName)s %(levelname)s: %(message)s', level=logging.DEBUG if args.debug else logging.INFO)
    logger.info(f'NetApp Exporter {__version__} started running')
    disable_created_metrics()
    registry = CollectorRegistry()
    ProcessCollector(registry=registry)
    PlatformCollector(registry=registry)
    Info('netapp_exporter_build', 'NetApp exporter build information', registry=registry).info({'version': __version__})
    metrics = ExporterMetrics(registry)
    client_factory = functools.partial(OntapClient, args.host, args.user, args.password,
                                       cert_file=args.cert_file,
                                       cert_server_name=args.cert_server_name,
                                       timeout=args.timeout,
                                       request_latency=metrics.request_latency)
    collector = NetAppCollector(CollectionOrchestrator(client_factory, metrics))
    registry.register(collector)

    if args.test:
        print(generate_latest(registry).decode('utf-8'))
        success = metrics.collection_errors._value.get() == 0
        logger.info(f'Collection {"is successful!" if success else "failed!"}')
        sys.exit(0 if success else 1)

    logger.info(f'Serving NetApp metrics on {args.bind_address}:{args.port}')
    start_wsgi_server(registry, port=args.port, addr=args.bind_address)

if __name__ == '__main__':
    main()
