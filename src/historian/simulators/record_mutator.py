"""
Synthetic source simulator.

Keeps an evolving "customers" source table in memory and emits the raw
current-state batches a snapshot run would see: inserts, attribute updates,
hard deletes and, on request, stale duplicate rows for the same key.
Seeded, so a given seed always produces the same batches.
"""

import random
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from faker import Faker

from historian.utils.logging_config import get_logger

logger = get_logger(__name__)

STATUSES = ['prospect', 'active', 'suspended', 'churned']
TIERS = ['free', 'basic', 'pro', 'enterprise']


class RecordMutator:
    """
    Generates successive source batches for snapshot runs.

    Usage:
        mutator = RecordMutator(seed=7)
        runner.run(mutator.next_batch())
        runner.run(mutator.next_batch())
    """

    def __init__(
        self,
        seed: int = 0,
        initial_size: int = 10,
        start: Optional[datetime] = None,
        tick: timedelta = timedelta(minutes=5),
        insert_rate: float = 0.3,
        update_rate: float = 0.4,
        delete_rate: float = 0.1,
        duplicate_rate: float = 0.2,
    ):
        self.faker = Faker()
        self.faker.seed_instance(seed)
        self.random = random.Random(seed)
        self.clock = start or datetime(2024, 1, 1, tzinfo=timezone.utc)
        self.tick = tick
        self.insert_rate = insert_rate
        self.update_rate = update_rate
        self.delete_rate = delete_rate
        self.duplicate_rate = duplicate_rate

        self.rows: Dict[int, Dict[str, Any]] = {}
        self.deleted_ids: List[int] = []
        self._next_id = 1
        self.stats = {'inserted': 0, 'updated': 0, 'deleted': 0}

        for _ in range(initial_size):
            self._insert()

    def _advance(self) -> datetime:
        self.clock = self.clock + self.tick
        return self.clock

    def _insert(self) -> Dict[str, Any]:
        customer_id = self._next_id
        self._next_id += 1
        row = {
            'id': customer_id,
            'name': self.faker.name(),
            'email': self.faker.email(),
            'city': self.faker.city(),
            'status': self.random.choice(STATUSES),
            'tier': self.random.choice(TIERS),
            'updated_at': self.clock,
        }
        self.rows[customer_id] = row
        self.stats['inserted'] += 1
        logger.debug(f"Inserted customer {customer_id}")
        return row

    def _update(self, customer_id: int) -> Dict[str, Any]:
        row = dict(self.rows[customer_id])
        update_type = self.random.choice(['status', 'address', 'both'])
        if update_type in ('status', 'both'):
            row['status'] = self.random.choice([s for s in STATUSES if s != row['status']])
        if update_type in ('address', 'both'):
            row['city'] = self.faker.city()
            row['email'] = self.faker.email()
        row['updated_at'] = self.clock
        self.rows[customer_id] = row
        self.stats['updated'] += 1
        logger.debug(f"Updated customer {customer_id} ({update_type})")
        return row

    def _delete(self, customer_id: int) -> None:
        del self.rows[customer_id]
        self.deleted_ids.append(customer_id)
        self.stats['deleted'] += 1
        logger.debug(f"Deleted customer {customer_id}")

    def mutate(self) -> None:
        """Advance the clock and apply one random mix of inserts, updates and deletes."""
        self._advance()
        existing = sorted(self.rows)

        if self.random.random() < self.insert_rate:
            for _ in range(self.random.randint(1, 3)):
                self._insert()

        if existing and self.random.random() < self.update_rate:
            count = min(self.random.randint(1, 3), len(existing))
            for customer_id in self.random.sample(existing, count):
                self._update(customer_id)

        if len(existing) > 5 and self.random.random() < self.delete_rate:
            candidates = [c for c in existing if c in self.rows]
            for customer_id in self.random.sample(candidates, min(self.random.randint(1, 2), len(candidates) // 2)):
                self._delete(customer_id)

    def current_batch(self, with_duplicates: bool = True) -> List[Dict[str, Any]]:
        """
        The source as a raw batch.

        With duplicates enabled some keys also carry an older row (earlier
        updated_at, different attributes) that the normalizer must discard.
        """
        batch: List[Dict[str, Any]] = []
        for customer_id in sorted(self.rows):
            row = dict(self.rows[customer_id])
            if with_duplicates and self.random.random() < self.duplicate_rate:
                stale = dict(row)
                stale['status'] = 'prospect' if row['status'] != 'prospect' else 'active'
                stale['updated_at'] = row['updated_at'] - timedelta(seconds=self.random.randint(1, 60))
                batch.append(stale)
            batch.append(row)
        self.random.shuffle(batch)
        return batch

    def next_batch(self, with_duplicates: bool = True) -> List[Dict[str, Any]]:
        """mutate() then current_batch()."""
        self.mutate()
        return self.current_batch(with_duplicates)
