"""Fake ONTAP clients shared by the exporter tests."""

from __future__ import annotations

import threading

import pytest

from ontap_client import CounterSample, DiskInfo, VolumeInfo


class FakeOntapClient:
    """Stands in for OntapClient.

    Each fetch returns the configured records, or raises the configured value
    when it is an exception instance.
    """

    def __init__(self, backend):
        self._backend = backend
        self.closed = False

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.closed = True

    def _answer(self, key):
        with self._backend.lock:
            self._backend.calls.append(key)
        value = self._backend.data.get(key, [])
        if isinstance(value, Exception):
            raise value
        return value

    def get_cluster_name(self):
        return self._answer("cluster_name")

    def get_disk_perf(self):
        return self._answer("disk_perf")

    def get_disk_info(self):
        return self._answer("disk_info")

    def get_volume_to_aggr_map(self):
        return self._answer("volume_to_aggr")

    def get_volume_perf(self):
        return self._answer("volume_perf")

    def get_volume_info(self, max_records):
        self._backend.volume_info_max_records = max_records
        return self._answer("volume_info")

    def get_aggr_perf(self):
        return self._answer("aggr_perf")


class FakeBackend:
    """Client factory counting how many clients a scrape opens."""

    def __init__(self, **data):
        self.data = {"cluster_name": "cluster1", "volume_to_aggr": {}}
        self.data.update(data)
        self.clients = []
        self.calls = []
        self.lock = threading.Lock()
        self.volume_info_max_records = None

    def __call__(self):
        client = FakeOntapClient(self)
        with self.lock:
            self.clients.append(client)
        return client


@pytest.fixture
def backend():
    return FakeBackend(
        disk_perf=[
            CounterSample("disk1", "base_for_disk_busy", "12.5"),
            CounterSample("disk1", "disk_busy", "3"),
        ],
        disk_info=[DiskInfo(name="disk1", online=True, spare=False, prefailed=False)],
        volume_to_aggr={"vol1": "aggr1"},
        volume_perf=[CounterSample("vol1", "read_ops", "42")],
        volume_info=[
            VolumeInfo(
                name="vol1",
                aggr="aggr1",
                state="online",
                size_total="1000",
                size_used="400",
                size_free="600",
                snap_percent_used="10",
                snap_percent_reserve="5",
            )
        ],
        aggr_perf=[CounterSample("aggr1", "total_transfers", "7")],
    )
