import threading
import time
from pathlib import Path

import pytest

from apim_lifecycle.contract.loader import load_contract
from apim_lifecycle.gateway.memory import InMemoryGateway
from apim_lifecycle.lifecycle import ApiIdentity, ResourceLifecycleManager
from apim_lifecycle.locks import KeyedLocks, api_key, association_key, product_key

FIXTURES = Path(__file__).parent / "fixtures"


class TestKeyedLocks:
    def test_same_key_same_lock(self):
        locks = KeyedLocks()
        assert locks.lock_for("api:a") is locks.lock_for("api:a")
        assert locks.lock_for("api:a") is not locks.lock_for("api:b")
        assert len(locks) == 2

    def test_hold_releases_on_error(self):
        locks = KeyedLocks()
        with pytest.raises(RuntimeError):
            with locks.hold("api:a", "api:b"):
                raise RuntimeError("boom")
        assert not locks.lock_for("api:a").locked()
        assert not locks.lock_for("api:b").locked()

    def test_hold_serializes_same_key(self):
        locks = KeyedLocks()
        events = []

        def worker(name):
            with locks.hold("api:a"):
                events.append(f"{name}-in")
                time.sleep(0.02)
                events.append(f"{name}-out")

        threads = [threading.Thread(target=worker, args=(n,)) for n in ("one", "two")]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert events[0].endswith("-in") and events[1].endswith("-out")
        assert events[0].split("-")[0] == events[1].split("-")[0]

    def test_opposite_key_order_does_not_deadlock(self):
        locks = KeyedLocks()
        done = []

        def worker(keys):
            for _ in range(50):
                with locks.hold(*keys):
                    pass
            done.append(keys)

        threads = [
            threading.Thread(target=worker, args=(("api:a", "api:b"),)),
            threading.Thread(target=worker, args=(("api:b", "api:a"),)),
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=5)
        assert len(done) == 2

    def test_key_helpers(self):
        assert api_key("weather") == "api:weather"
        assert product_key("starter") == "product:starter"
        assert association_key("starter", "weather") == "product-api:starter:weather"


class TestConcurrentImports:
    def test_parallel_imports_of_same_api_converge(self):
        gateway = InMemoryGateway()
        manager = ResourceLifecycleManager(gateway)
        contract = load_contract(FIXTURES / "petstore.yaml")
        errors = []

        def run():
            try:
                manager.create_or_update_api(ApiIdentity(api_id="pets"), contract)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=run) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(gateway.list_apis(timeout=1)) == 1
        assert len(gateway.list_operations("pets", timeout=1)) == 3
