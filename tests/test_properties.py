"""
Multi-run behaviour against simulated source tables.

Each scenario replays a seeded sequence of source batches (inserts, updates,
hard deletes and stale duplicate rows) and checks the historized table after
every run.
"""

from datetime import timedelta

import pytest

from historian.quality.checks import history_suite
from historian.simulators.record_mutator import RecordMutator

RUNS = 15


def replay(runner, clock, mutator, runs=RUNS):
    """Historize the initial source, then run after each of `runs` mutations."""
    clock.set(mutator.clock + timedelta(minutes=1))
    results = [runner.run(mutator.current_batch())]
    for _ in range(runs):
        batch = mutator.next_batch()
        clock.set(mutator.clock + timedelta(minutes=1))
        results.append(runner.run(batch))
    return results


@pytest.mark.parametrize("seed", [1, 7, 42])
class TestSimulatedSources:

    def test_history_stays_valid_after_every_run(self, seed, make_runner, make_config, store, clock):
        runner = make_runner(make_config(invalidate_hard_deletes=True))
        mutator = RecordMutator(seed=seed)
        checks = history_suite()
        clock.set(mutator.clock + timedelta(minutes=1))
        runner.run(mutator.current_batch())

        for _ in range(RUNS):
            batch = mutator.next_batch()
            clock.set(mutator.clock + timedelta(minutes=1))
            runner.run(batch)
            checks.enforce(store.history(), target=store.table_name)

    def test_current_rows_mirror_the_source(self, seed, make_runner, make_config, store, clock):
        runner = make_runner(make_config(invalidate_hard_deletes=True))
        mutator = RecordMutator(seed=seed)

        replay(runner, clock, mutator)

        current = store.load_state().current
        assert set(current) == set(mutator.rows)
        for key, row in mutator.rows.items():
            assert current[key].attributes["status"] == row["status"]
            assert current[key].attributes["email"] == row["email"]
            assert current[key].valid_from == row["updated_at"]

    def test_rerunning_a_batch_writes_nothing(self, seed, make_runner, make_config, store, clock):
        runner = make_runner(make_config(invalidate_hard_deletes=True))
        mutator = RecordMutator(seed=seed)
        replay(runner, clock, mutator, runs=5)
        before = store.history()

        clock.set(clock.now + timedelta(minutes=1))
        result = runner.run(mutator.current_batch())

        assert result.writes == 0
        assert result.counts["UNCHANGED"] == len(mutator.rows)
        assert store.history() == before

    def test_deleted_keys_stay_open_without_invalidation(self, seed, make_runner, make_config, store, clock):
        runner = make_runner(make_config(invalidate_hard_deletes=False))
        mutator = RecordMutator(seed=seed, delete_rate=0.6)

        results = replay(runner, clock, mutator)

        assert sum(r.counts["DELETED"] for r in results) == 0
        current = store.load_state().current
        assert set(mutator.rows) <= set(current)
        assert set(mutator.deleted_ids) <= set(current)
        history_suite().enforce(store.history(), target=store.table_name)

    def test_every_source_version_is_historized(self, seed, make_runner, make_config, store, clock):
        runner = make_runner(make_config(invalidate_hard_deletes=True))
        mutator = RecordMutator(seed=seed)
        initial = len(mutator.rows)

        results = replay(runner, clock, mutator)

        assert sum(r.counts["NEW"] for r in results) == mutator.stats["inserted"]
        assert sum(r.counts["DELETED"] for r in results) == mutator.stats["deleted"]
        assert len(store.history()) == mutator.stats["inserted"] + sum(
            r.counts["CHANGED"] for r in results
        )
        assert initial > 0
