import contextlib
import logging
import http
import xml.etree.ElementTree as ET
from typing import NamedTuple
import urllib3
urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

logger = logging.getLogger(__name__)

ZAPI_PATH = 'servlets/netapp.servlets.admin.XMLrequest_filer'
ZAPI_VERSION = '1.130'
ZAPI_NAMESPACE = 'http://www.netapp.com/filer/admin'

DEFAULT_TIMEOUT = 30.0
PAGE_SIZE = 500
PERF_INSTANCES_PER_REQUEST = 100

DISK_PERF_COUNTERS = ['disk_busy', 'base_for_disk_busy', 'total_transfers',
                      'user_reads', 'user_writes', 'user_read_blocks', 'user_write_blocks',
                      'cp_reads', 'io_pending', 'io_queued']
VOLUME_PERF_COUNTERS = ['total_ops', 'read_ops', 'write_ops', 'other_ops',
                        'read_data', 'write_data', 'avg_latency', 'read_latency', 'write_latency']
AGGR_PERF_COUNTERS = ['total_transfers', 'user_reads', 'user_writes', 'cp_reads',
                      'user_read_blocks', 'user_write_blocks']

DISK_OFFLINE_CONTAINERS = ('broken', 'unknown')

class ZAPIFailure(Exception): pass

class CounterSample(NamedTuple):
    object_name: str
    counter: str
    value: str

class DiskInfo(NamedTuple):
    name: str
    online: bool
    spare: bool
    prefailed: bool

class VolumeInfo(NamedTuple):
    name: str
    aggr: str
    state: str
    size_total: str
    size_used: str
    size_free: str
    snap_percent_used: str
    snap_percent_reserve: str

def _strip_namespaces(root):
    for element in root.iter():
        if isinstance(element.tag, str) and '}' in element.tag:
            element.tag = element.tag.split('}', 1)[1]
    return root

def _add_args(parent, args):
    # args is a list of (name, value) pairs, value being text or a nested list of pairs
    for name, value in args:
        child = ET.SubElement(parent, name)
        if isinstance(value, list):
            _add_args(child, value)
        else:
            child.text = str(value)

def _is_true(element):
    return (element.text or '').strip().lower() == 'true'

class OntapClient(object):
    """
    Minimal ONTAPI (ZAPI) client. Every request is an XML document posted over
    HTTPS with basic authentication; no session is kept and nothing is retried.
    """
    def __init__(self, address, user, password, cert_file=None, cert_server_name=None,
                 timeout=DEFAULT_TIMEOUT, request_latency=None):
        self._user = user
        self._password = password
        self._address = address
        self._request_latency = request_latency
        pool_kwargs = dict(timeout=urllib3.Timeout(total=timeout), retries=False)
        if cert_file:
            self._pm = urllib3.PoolManager(ca_certs=cert_file, server_hostname=cert_server_name, **pool_kwargs)
        else:
            self._pm = urllib3.PoolManager(cert_reqs='CERT_NONE', **pool_kwargs)

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def close(self):
        self._pm.clear()

    def _request(self, api, args=None):
        root = ET.Element('netapp', {'version': ZAPI_VERSION, 'xmlns': ZAPI_NAMESPACE})
        _add_args(ET.SubElement(root, api), args or [])
        body = ET.tostring(root, encoding='utf-8', xml_declaration=True)
        headers = urllib3.make_headers(basic_auth=self._user + ':' + self._password)
        headers['Content-Type'] = 'text/xml; charset=utf-8'
        timer = self._request_latency.time() if self._request_latency is not None else contextlib.nullcontext()
        with timer:
            logger.debug(f'Sending {api} to {self._address} with arguments={args}')
            r = self._pm.request('POST', 'https://{}/{}'.format(self._address, ZAPI_PATH), body=body, headers=headers)
        if r.status != http.HTTPStatus.OK:
            raise ZAPIFailure(f'Request {api} failed with HTTP error {r.status} and message {r.data}')
        try:
            response = _strip_namespaces(ET.fromstring(r.data))
        except ET.ParseError as e:
            raise ZAPIFailure(f'Malformed response for {api}: {e}') from e
        results = response.find('results')
        if results is None:
            raise ZAPIFailure(f'Response for {api} has no results element')
        if results.get('status') != 'passed':
            raise ZAPIFailure(f'Request {api} failed with errno {results.get("errno")}: {results.get("reason")}')
        return results

    def _iter(self, api, args=None, max_records=PAGE_SIZE):
        """Yields the children of attributes-list for every page of an -iter API."""
        tag = None
        while True:
            page_args = list(args or []) + [('max-records', max_records)]
            if tag:
                page_args.append(('tag', tag))
            results = self._request(api, page_args)
            attributes = results.find('attributes-list')
            if attributes is not None:
                yield from attributes
            tag = results.findtext('next-tag')
            if not tag:
                return

    def get_cluster_name(self):
        results = self._request('cluster-identity-get')
        return results.findtext('attributes/cluster-identity-info/cluster-name', '')

    def _get_perf(self, object_name, counters):
        uuids = [i.findtext('uuid') for i in self._iter('perf-object-instance-list-info-iter',
                                                        [('objectname', object_name)])]
        samples = []
        for start in range(0, len(uuids), PERF_INSTANCES_PER_REQUEST):
            chunk = uuids[start:start + PERF_INSTANCES_PER_REQUEST]
            results = self._request('perf-object-get-instances',
                                    [('objectname', object_name),
                                     ('instance-uuids', [('instance-uuid', uuid) for uuid in chunk]),
                                     ('counters', [('counter', counter) for counter in counters])])
            for instance in results.iterfind('instances/instance-data'):
                name = instance.findtext('name', '')
                for counter in instance.iterfind('counters/counter-data'):
                    samples.append(CounterSample(name, counter.findtext('name', ''), counter.findtext('value', '')))
        return samples

    def get_disk_perf(self):
        return self._get_perf('disk', DISK_PERF_COUNTERS)

    def get_volume_perf(self):
        return self._get_perf('volume', VOLUME_PERF_COUNTERS)

    def get_aggr_perf(self):
        return self._get_perf('aggregate', AGGR_PERF_COUNTERS)

    def get_disk_info(self):
        disks = []
        for info in self._iter('storage-disk-get-iter'):
            container_type = info.findtext('disk-raid-info/container-type', '')
            offline = any(_is_true(i) for i in info.iter('is-offline'))
            disks.append(DiskInfo(name=info.findtext('disk-name', ''),
                                  online=not offline and container_type not in DISK_OFFLINE_CONTAINERS,
                                  spare=container_type == 'spare',
                                  prefailed=any(_is_true(i) for i in info.iter('is-prefailed'))))
        return disks

    def get_volume_to_aggr_map(self):
        desired = [('desired-attributes', [('volume-attributes', [('volume-id-attributes', [('name', ''),
                                                                                            ('containing-aggregate-name', '')])])])]
        volume_to_aggr = {}
        for volume in self._iter('volume-get-iter', desired):
            volume_to_aggr[volume.findtext('volume-id-attributes/name', '')] = \
                volume.findtext('volume-id-attributes/containing-aggregate-name', '')
        return volume_to_aggr

    def get_volume_info(self, max_records):
        volumes = []
        for volume in self._iter('volume-get-iter', max_records=max_records):
            volumes.append(VolumeInfo(name=volume.findtext('volume-id-attributes/name', ''),
                                      aggr=volume.findtext('volume-id-attributes/containing-aggregate-name', ''),
                                      state=volume.findtext('volume-state-attributes/state', ''),
                                      size_total=volume.findtext('volume-space-attributes/size-total', ''),
                                      size_used=volume.findtext('volume-space-attributes/size-used', ''),
                                      size_free=volume.findtext('volume-space-attributes/size-available', ''),
                                      snap_percent_used=volume.findtext('volume-space-attributes/percentage-snapshot-reserve-used', ''),
                                      snap_percent_reserve=volume.findtext('volume-space-attributes/percentage-snapshot-reserve', '')))
        return volumes
