import threading
from datetime import datetime, timezone
from decimal import Decimal

from src.utils.clock import as_utc
from src.utils.hashing import canonical_json, create_decision_hash, verify_decision_hash
from src.utils.locks import KeyedLock


class TestHashing:
    def test_wall_clock_fields_ignored(self):
        a = {'decision_id': 'a', 'timestamp': '1', 'duration_ms': 1.0, 'action': 'EXECUTE'}
        b = {'decision_id': 'b', 'timestamp': '2', 'duration_ms': 9.0, 'action': 'EXECUTE'}
        assert create_decision_hash(a) == create_decision_hash(b)

    def test_content_change_detected(self):
        record = {'action': 'EXECUTE', 'quantity': 4}
        digest = create_decision_hash(record)
        assert verify_decision_hash(record, digest)
        assert not verify_decision_hash({'action': 'EXECUTE', 'quantity': 5}, digest)

    def test_canonical_json_sorts_and_converts(self):
        text = canonical_json({'b': Decimal('1.5'), 'a': datetime(2026, 1, 1)})
        assert text == '{"a": "2026-01-01T00:00:00", "b": 1.5}'


class TestKeyedLock:
    def test_one_lock_per_key(self):
        locks = KeyedLock()
        with locks.hold('SPY'):
            with locks.hold('SPY'):
                pass
        with locks.hold_many(['B', 'A', 'B']):
            pass
        assert len(locks) == 3

    def test_serializes_read_modify_write(self):
        locks = KeyedLock()
        counter = {'value': 0}

        def bump():
            for _ in range(200):
                with locks.hold('rule'):
                    current = counter['value']
                    counter['value'] = current + 1

        threads = [threading.Thread(target=bump) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert counter['value'] == 800


class TestClock:
    def test_naive_is_utc(self):
        assert as_utc(datetime(2026, 1, 1)).tzinfo == timezone.utc
        assert as_utc(None) is None
