import numpy as np
import pytest

import mcmcp.attention as M
from mcmcp.chainlog import ParticipantLedger


@pytest.fixture
def bank_dir(tmp_path):
    for s1, s2 in [("happy", "sad"), ("angry", "fear")]:
        sub = tmp_path / f"{s1}_{s2}"
        sub.mkdir()
        (sub / f"{s1}.png").write_bytes(b"\x89PNG-first")
        (sub / f"{s2}.png").write_bytes(b"\x89PNG-second")
    # incomplete pair is skipped
    (tmp_path / "surprise_neutral").mkdir()
    (tmp_path / "surprise_neutral" / "surprise.png").write_bytes(b"x")
    return tmp_path


def test_scan_and_filter(bank_dir):
    bank = M.AttentionCheckBank(bank_dir, ParticipantLedger())
    assert len(bank.pairs_for(None)) == 2
    assert [p.labels for p in bank.pairs_for("sad")] == [("happy", "sad")]
    assert bank.pairs_for("surprise") == []


def test_draw_payload(bank_dir):
    bank = M.AttentionCheckBank(bank_dir, ParticipantLedger())
    trial = bank.draw("fear", np.random.default_rng(0))
    assert trial["trial_type"] == "attention_check"
    assert trial["attention_check"] == ["angry", "fear"]
    assert trial["current"].startswith("data:image/png;base64,")
    assert trial["current"] != trial["proposal"]


def test_draw_without_pair_raises(bank_dir):
    bank = M.AttentionCheckBank(bank_dir, ParticipantLedger())
    with pytest.raises(LookupError):
        bank.draw("neutral", np.random.default_rng(0))


def test_missing_directory(tmp_path):
    with pytest.raises(FileNotFoundError):
        M.AttentionCheckBank(tmp_path / "missing", ParticipantLedger())


def test_two_failures_terminate(bank_dir):
    ledger = ParticipantLedger()
    bank = M.AttentionCheckBank(bank_dir, ledger, max_failures=2)
    first = bank.register("p1", passed=False)
    assert first == {"status": "success", "fail_count": 1, "terminate": False}
    assert bank.register("p1", passed=True)["fail_count"] == 1
    second = bank.register("p1", passed=False)
    assert second["fail_count"] == 2 and second["terminate"] is True
    assert ledger.get("p1", M.FAIL_COLUMN) == 2
