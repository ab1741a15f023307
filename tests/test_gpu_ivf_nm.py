"""Tests for the device-resident NM index lifecycle and batched search."""

import threading

import numpy as np
import pytest
import torch

from torch_ivf_nm import (
    GPUIVFNM,
    IVFNM,
    RAW_DATA,
    BinarySet,
    ErrorKind,
    IndexConfig,
    IndexKind,
    NotTrainedError,
    ResourceUnavailableError,
    SerializationError,
    TypeMismatchError,
)
from torch_ivf_nm import gpu_ivf_nm as gpu_ivf_nm_module
from torch_ivf_nm.indexes.device_ivf_flat import DeviceIVFFlatIndex
from torch_ivf_nm.indexes.ivf_flat import HostIVFFlatIndex
from torch_ivf_nm.resources import ResourceScope


def _build(pool, vectors, nlist=8, metric="L2", device_slot=0):
    torch.manual_seed(0)
    index = GPUIVFNM(device_slot=device_slot, pool=pool)
    index.train(
        vectors, {"device_slot": device_slot, "list_count": nlist, "metric": metric}
    )
    index.add(vectors)
    return index


def _serialize_with_raw(index, vectors):
    binary_set = index.serialize()
    binary_set.append(RAW_DATA, vectors)
    return binary_set


class TestTrainAndAdd:
    def test_self_search_finds_own_vector(self, pool):
        """Each training vector should be its own nearest neighbor."""
        np.random.seed(42)
        vectors = np.random.randn(1000, 128).astype(np.float32)

        index = _build(pool, vectors, nlist=16)
        distances, labels = index.search(vectors, k=1, config={"probe_count": 1})

        expected = torch.arange(1000)
        hits = (labels[:, 0].cpu() == expected).float().mean().item()
        assert hits >= 0.95

        found = labels[:, 0].cpu() == expected
        torch.testing.assert_close(
            distances[found, 0].cpu(), torch.zeros(int(found.sum())), atol=1e-4, rtol=0
        )

    def test_train_installs_device_index(self, pool, vectors):
        torch.manual_seed(0)
        index = GPUIVFNM(pool=pool)
        index.train(vectors, IndexConfig(device_slot=1, list_count=8, metric="IP"))

        assert index.kind is IndexKind.DEVICE
        assert index.device_slot == 1
        assert index.is_trained
        assert index.ntotal == 0
        assert isinstance(index.index, DeviceIVFFlatIndex)
        assert index.index.nlist == 8

    def test_train_unavailable_slot(self, pool, vectors):
        index = GPUIVFNM(pool=pool)
        with pytest.raises(ResourceUnavailableError) as excinfo:
            index.train(vectors, {"gpu_id": 3, "nlist": 8, "metric_type": "L2"})
        assert excinfo.value.kind is ErrorKind.RESOURCE_UNAVAILABLE
        assert index.kind is None
        assert not index.is_trained

    def test_train_requires_list_count(self, pool, vectors):
        with pytest.raises(ValueError, match="list_count"):
            GPUIVFNM(pool=pool).train(vectors, {"device_slot": 0})

    def test_add_before_train(self, pool, vectors):
        with pytest.raises(NotTrainedError):
            GPUIVFNM(pool=pool).add(vectors)

    def test_add_appends_in_insertion_order(self, pool, vectors):
        index = _build(pool, vectors[:500])
        index.add(vectors[500:])

        assert index.ntotal == 1000
        device_index = index.index
        sizes = device_index.list_sizes.cpu()
        assert int(sizes.sum()) == 1000
        assert sorted(device_index.ids.cpu().tolist()) == list(range(1000))
        for list_no in range(device_index.nlist):
            ids = device_index.list_ids(list_no).cpu()
            assert torch.equal(ids, ids.sort().values)

    def test_add_with_explicit_ids(self, pool, vectors):
        index = _build(pool, vectors[:100])
        index.add(vectors[:2], ids=[5000, 5001])
        _, labels = index.search(vectors[:2], k=1, config={"probe_count": 8})
        assert set(labels[:, 0].tolist()) <= {0, 1, 5000, 5001}

    def test_add_after_lease_expired(self, pool, vectors):
        index = _build(pool, vectors)
        pool.release(0)
        with pytest.raises(ResourceUnavailableError, match="Add IVF"):
            index.add(vectors[:10])
        assert index.ntotal == 1000


class TestSearch:
    def test_host_index_rejected(self, pool, vectors):
        host = _build(pool, vectors).copy_gpu_to_cpu()
        index = GPUIVFNM.from_host_index(host, pool=pool)

        with pytest.raises(TypeMismatchError) as excinfo:
            index.search(vectors[:5], k=3)
        assert excinfo.value.kind is ErrorKind.TYPE_MISMATCH

    def test_empty_handle_rejected(self, pool, vectors):
        with pytest.raises(TypeMismatchError):
            GPUIVFNM(pool=pool).search(vectors[:5], k=3)

    def test_search_after_lease_expired(self, pool, vectors):
        index = _build(pool, vectors)
        pool.free()
        with pytest.raises(ResourceUnavailableError):
            index.search(vectors[:5], k=3)

    @pytest.mark.parametrize("n_queries", [2047, 2048, 2049, 4096, 5000])
    def test_block_partition_is_invisible(self, pool, monkeypatch, n_queries):
        np.random.seed(7)
        vectors = np.random.randn(300, 16).astype(np.float32)
        queries = np.random.randn(n_queries, 16).astype(np.float32)
        index = _build(pool, vectors, nlist=6)
        config = {"probe_count": 2}

        calls = []
        original_search = DeviceIVFFlatIndex.search

        def counting_search(self, queries, k, bitset=None):
            calls.append(queries.shape[0])
            return original_search(self, queries, k, bitset)

        monkeypatch.setattr(DeviceIVFFlatIndex, "search", counting_search)
        blocked_d, blocked_l = index.search(queries, k=5, config=config)
        assert calls == [min(2048, n_queries - s) for s in range(0, n_queries, 2048)]

        monkeypatch.setattr(gpu_ivf_nm_module, "QUERY_BLOCK_SIZE", 10**9)
        whole_d, whole_l = index.search(queries, k=5, config=config)

        assert torch.equal(blocked_l, whole_l)
        torch.testing.assert_close(blocked_d, whole_d)

    def test_search_into_flat_windows(self, pool, vectors):
        index = _build(pool, vectors)
        queries = vectors[:10]
        k = 4
        distances = torch.empty(10 * k)
        labels = torch.empty(10 * k, dtype=torch.long)

        index.search_into(queries, k, distances, labels, config={"probe_count": 3})
        expected_d, expected_l = index.search(queries, k, config={"probe_count": 3})

        for i in range(10):
            assert torch.equal(labels[i * k : (i + 1) * k], expected_l[i])
            torch.testing.assert_close(distances[i * k : (i + 1) * k], expected_d[i])

    def test_search_into_rejects_wrong_buffer_size(self, pool, vectors):
        index = _build(pool, vectors)
        with pytest.raises(ValueError, match="Output buffers"):
            index.search_into(
                vectors[:3], 2, torch.empty(5), torch.empty(6, dtype=torch.long)
            )

    def test_probe_count_applied(self, pool, vectors):
        index = _build(pool, vectors)
        index.search(vectors[:3], k=2, config={"nprobe": 5})
        assert index.index.nprobe == 5
        with pytest.raises(ValueError):
            index.search(vectors[:3], k=2, config={"probe_count": 99})

    def test_results_sorted_and_padded(self, pool, vectors):
        index = _build(pool, vectors[:40], nlist=4)
        distances, labels = index.search(vectors[:5], k=50, config={"probe_count": 1})

        assert labels.shape == (5, 50)
        for row_d, row_l in zip(distances, labels):
            found = row_l >= 0
            assert found.sum() < 50
            assert torch.all(row_d[found][1:] >= row_d[found][:-1])
            assert torch.all(torch.isinf(row_d[~found]))

    def test_bitset_excludes_ids(self, pool, vectors):
        index = _build(pool, vectors)
        config = {"probe_count": 8}
        _, labels = index.search(vectors[:20], k=1, config=config)
        assert torch.equal(labels[:, 0], torch.arange(20))

        mask = torch.zeros(1000, dtype=torch.bool)
        mask[:10] = True
        _, labels = index.search(vectors[:20], k=3, config=config, bitset=mask)
        assert not torch.isin(labels, torch.arange(10)).any()
        assert torch.equal(labels[10:, 0], torch.arange(10, 20))

    def test_packed_bitset(self, pool, vectors):
        index = _build(pool, vectors)
        packed = bytes([0b00000101])  # excludes ids 0 and 2
        _, labels = index.search(vectors[:3], k=1, config={"probe_count": 8}, bitset=packed)
        assert labels[1, 0].item() == 1
        assert labels[0, 0].item() not in (0, 2)
        assert labels[2, 0].item() not in (0, 2)

    def test_inner_product_is_descending(self, pool, vectors):
        normalized = vectors / np.linalg.norm(vectors, axis=1, keepdims=True)
        index = _build(pool, normalized, metric="IP")
        distances, labels = index.search(normalized[:10], k=5, config={"probe_count": 8})

        assert torch.equal(labels[:, 0], torch.arange(10))
        torch.testing.assert_close(distances[:, 0], torch.ones(10), atol=1e-5, rtol=0)
        assert torch.all(distances[:, 1:] <= distances[:, :-1])

    def test_invalid_k(self, pool, vectors):
        with pytest.raises(ValueError, match="k must be positive"):
            _build(pool, vectors).search(vectors[:2], k=0)


class TestSerializeAndLoad:
    def test_serialize_untrained(self, pool):
        with pytest.raises(NotTrainedError) as excinfo:
            GPUIVFNM(pool=pool).serialize()
        assert excinfo.value.kind is ErrorKind.NOT_TRAINED

    def test_serialize_holds_structure_only(self, pool, vectors):
        index = _build(pool, vectors)
        binary_set = index.serialize()

        assert len(binary_set) == 1
        blob = binary_set.get_by_name("IVF")
        # Raw vectors are not part of the structure blob
        assert blob.size < vectors.nbytes

    def test_round_trip_matches_original(self, pool, vectors):
        np.random.seed(3)
        queries = np.random.randn(50, 32).astype(np.float32)
        index = _build(pool, vectors)
        binary_set = _serialize_with_raw(index, vectors)

        loaded = GPUIVFNM(device_slot=1, pool=pool)
        loaded.load(binary_set)

        assert loaded.kind is IndexKind.DEVICE
        assert loaded.ntotal == index.ntotal
        config = {"probe_count": 3}
        d1, l1 = index.search(queries, k=10, config=config)
        d2, l2 = loaded.search(queries, k=10, config=config)
        assert torch.equal(l1, l2)
        torch.testing.assert_close(d1, d2)

    def test_round_trip_through_container_bytes(self, pool, vectors):
        index = _build(pool, vectors)
        encoded = _serialize_with_raw(index, vectors).to_bytes()

        loaded = GPUIVFNM(pool=pool)
        loaded.load(BinarySet.from_bytes(encoded))
        _, labels = loaded.search(vectors[:10], k=1, config={"probe_count": 8})
        assert torch.equal(labels[:, 0], torch.arange(10))

    def test_load_missing_raw_data_keeps_state(self, pool, vectors):
        index = _build(pool, vectors)
        before = index.index

        with pytest.raises(SerializationError) as excinfo:
            index.load(index.serialize())
        assert excinfo.value.kind is ErrorKind.SERIALIZATION_FAILURE
        assert index.index is before
        assert index.ntotal == 1000

    def test_load_with_wrong_raw_data(self, pool, vectors):
        binary_set = _serialize_with_raw(_build(pool, vectors), vectors[:10])
        with pytest.raises(SerializationError):
            GPUIVFNM(pool=pool).load(binary_set)

    def test_load_unavailable_slot(self, pool, vectors):
        binary_set = _serialize_with_raw(_build(pool, vectors), vectors)
        index = GPUIVFNM(device_slot=9, pool=pool)
        with pytest.raises(ResourceUnavailableError, match="Load error"):
            index.load(binary_set)
        assert index.kind is None

    def test_write_failure_reported(self, pool, vectors, monkeypatch):
        index = _build(pool, vectors)

        def failing_write(host_index):
            raise OSError("disk full")

        monkeypatch.setattr(gpu_ivf_nm_module, "write_index_nm", failing_write)
        with pytest.raises(SerializationError, match="disk full"):
            index.serialize()

    def test_load_corrupt_structure_keeps_state(self, pool, vectors):
        index = _build(pool, vectors)
        before = index.index
        binary_set = BinarySet()
        binary_set.append("IVF", b"garbage-not-a-torch-blob")
        binary_set.append(RAW_DATA, vectors)

        with pytest.raises(SerializationError, match="Load error"):
            index.load(binary_set)
        assert index.index is before
        assert index.kind is IndexKind.DEVICE
        assert index.ntotal == 1000

        with pytest.raises(SerializationError):
            GPUIVFNM(pool=pool).load(binary_set)

    def test_held_slot_is_not_a_serialization_failure(self, pool, vectors):
        index = _build(pool, vectors)
        with ResourceScope(pool.acquire(0), 0):
            with pytest.raises(RuntimeError, match="already held") as excinfo:
                index.serialize()
        assert not isinstance(excinfo.value, SerializationError)
        assert index.serialize().get_by_name("IVF").size > 0

    def test_ids_outside_raw_rows_cannot_be_loaded(self, pool, vectors):
        index = _build(pool, vectors[:100])
        index.add(vectors[100:102], ids=[5000, 5001])
        binary_set = _serialize_with_raw(index, vectors[:102])

        with pytest.raises(SerializationError, match="must lie in"):
            GPUIVFNM(pool=pool).load(binary_set)


class TestCopy:
    def test_copy_to_host_keeps_ids_without_codes(self, pool, vectors):
        index = _build(pool, vectors)
        device_index = index.index

        host = index.copy_gpu_to_cpu()

        assert isinstance(host, IVFNM)
        assert isinstance(host.index, HostIVFFlatIndex)
        assert not host.index.has_codes
        assert host.index.invlists.codes is None
        for list_no in range(device_index.nlist):
            assert torch.equal(
                host.index.invlists.get_ids(list_no), device_index.list_ids(list_no).cpu()
            )
        torch.testing.assert_close(host.index.centroids, device_index.centroids.cpu())
        assert host.arranged_data.size == vectors.nbytes

    def test_host_handle_copy_is_identity(self, pool, vectors):
        host = _build(pool, vectors).copy_gpu_to_cpu()
        handle = GPUIVFNM.from_host_index(host, pool=pool)
        assert handle.kind is IndexKind.HOST
        assert handle.copy_gpu_to_cpu() is host

    def test_copy_to_other_device(self, pool, vectors):
        index = _build(pool, vectors)
        copy = index.copy_gpu_to_gpu(1, {"probe_count": 4})

        assert copy.kind is IndexKind.DEVICE
        assert copy.device_slot == 1
        assert copy.index is not index.index
        d1, l1 = index.search(vectors[:50], k=5, config={"probe_count": 4})
        d2, l2 = copy.search(vectors[:50], k=5)
        assert torch.equal(l1, l2)
        torch.testing.assert_close(d1, d2)

    def test_copy_to_unavailable_device(self, pool, vectors):
        with pytest.raises(ResourceUnavailableError):
            _build(pool, vectors).copy_gpu_to_gpu(4)

    def test_host_handle_serializes(self, pool, vectors):
        host = _build(pool, vectors).copy_gpu_to_cpu()
        binary_set = GPUIVFNM.from_host_index(host, pool=pool).serialize()
        binary_set.append(RAW_DATA, vectors)

        restored = IVFNM(pool=pool)
        restored.load(binary_set)
        assert restored.ntotal == 1000
        np.testing.assert_array_equal(restored.arranged_data, host.arranged_data)

    def test_host_handle_untrained(self, pool):
        with pytest.raises(NotTrainedError):
            IVFNM(pool=pool).copy_cpu_to_gpu(0)


class TestHandleLock:
    @pytest.mark.parametrize("contender", ["search_into", "load"])
    def test_operations_on_one_handle_serialize(
        self, pool, vectors, monkeypatch, contender
    ):
        index = _build(pool, vectors)
        entered = threading.Event()
        proceed = threading.Event()
        order = []
        original_search = DeviceIVFFlatIndex.search

        def blocking_search(self, queries, k, bitset=None):
            entered.set()
            proceed.wait(timeout=5)
            order.append("search")
            return original_search(self, queries, k, bitset)

        monkeypatch.setattr(DeviceIVFFlatIndex, "search", blocking_search)

        def searcher():
            index.search(vectors[:4], k=3)

        def second():
            # Neither call needs the device resource, only the handle
            try:
                if contender == "search_into":
                    index.search_into(
                        vectors[:4], 3, torch.empty(1), torch.empty(1, dtype=torch.long)
                    )
                else:
                    index.load(BinarySet())
            except (ValueError, SerializationError):
                order.append(contender)

        first = threading.Thread(target=searcher)
        first.start()
        assert entered.wait(timeout=5)

        other = threading.Thread(target=second)
        other.start()
        other.join(timeout=0.2)
        assert other.is_alive()
        assert order == []

        proceed.set()
        first.join(timeout=5)
        other.join(timeout=5)
        assert order == ["search", contender]
