import threading

import pytest

import mcmcp.chainlog as M
from mcmcp.errors import PersistenceError


def test_table_names():
    assert M.ChainKey("p1", "blockwise", 3).table_name == "p1_blockwise_no3"
    assert M.ChainKey("2", "happy", 1, prefix="consensus").table_name == "consensus_2_happy_no1"


def test_append_assigns_ids_and_returns_copies():
    log = M.InMemoryChainLog()
    key = M.ChainKey("p1", "t", 1)
    log.create(key)
    a = log.append(key, M.Sample(state=[0.0], category="happy"))
    b = log.append(key, M.Sample(state=[1.0], category="happy"))
    assert (a.id, b.id) == (1, 2)

    tip = log.tip(key)
    tip.state[0] = 99.0
    assert log.tip(key).state == [1.0]
    assert [r.state for r in log.latest(key, 5)] == [[0.0], [1.0]]


def test_missing_chain_is_a_persistence_error():
    log = M.InMemoryChainLog()
    with pytest.raises(PersistenceError):
        log.latest(M.ChainKey("ghost", "t", 1))


def test_commit_is_all_or_nothing():
    log = M.InMemoryChainLog()
    key = M.ChainKey("p1", "t", 1)
    log.create(key)
    log.append(key, M.Sample(state=[0.0], ready={"a": True}))

    with pytest.raises(PersistenceError):
        log.commit(key, [M.Sample(state=[1.0])], mark_picked=5, update_tip={"a": False})
    rows = log.samples(key)
    assert len(rows) == 1
    assert rows[0].ready == {"a": True} and not rows[0].picked


def test_commit_marks_and_updates_before_appending():
    log = M.InMemoryChainLog()
    key = M.ChainKey("p1", "t", 1)
    log.create(key)
    log.commit(key, [M.Sample(state=[0.0]), M.Sample(state=[1.0], proposal=True, ready={"a": True, "b": False})])
    log.commit(key, [M.Sample(state=[0.0])], mark_picked=1, update_tip={"a": False})
    rows = log.samples(key)
    assert rows[0].picked and not rows[1].picked
    assert rows[1].ready == {"a": False, "b": False}
    assert len(rows) == 3


def test_commit_on_empty_chain_cannot_mark():
    log = M.InMemoryChainLog()
    key = M.ChainKey("p1", "t", 1)
    log.create(key)
    with pytest.raises(PersistenceError):
        log.commit(key, mark_picked=0)


def test_concurrent_appends_keep_ids_unique():
    log = M.InMemoryChainLog()
    key = M.ChainKey("p1", "t", 1)
    log.create(key)

    def worker():
        for _ in range(50):
            log.append(key, M.Sample(state=[0.0]))

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    ids = [r.id for r in log.samples(key)]
    assert ids == list(range(1, 201))


def test_ledger_counters():
    ledger = M.ParticipantLedger()
    ledger.register("p1")
    assert ledger.get("p1", "happy_ss") == 0
    assert ledger.increment("p1", "happy_ss") == 1
    assert ledger.increment("p1", "happy_ss", by=2) == 3
    assert ledger.get("nobody", "happy_ss") == 0


def test_ledger_teams_fill_in_arrival_order():
    ledger = M.ParticipantLedger()
    teams = [ledger.assign_team(p, 3) for p in ["A", "B", "C", "D"]]
    assert teams == [1, 1, 1, 2]
    assert ledger.assign_team("B", 3) == 1
    assert ledger.team_members(1) == ["A", "B", "C"]
    assert ledger.team_members(2) == ["D"]


def test_keyed_locks_reuse_per_key():
    locks = M.KeyedLocks()
    assert locks("a") is locks("a")
    assert locks("a") is not locks("b")
