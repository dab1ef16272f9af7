import pytest

pytest.importorskip("httpx")
from fastapi.testclient import TestClient

from mcmcp.api import create_app
from mcmcp.config import ExperimentConfig
from mcmcp.consensus import ConsensusCoordinator
from mcmcp.controller import TrialController


@pytest.fixture
def client():
    cfg = ExperimentConfig(
        dim=2,
        ranges=[[-1.0, 1.0], [-1.0, 1.0]],
        classes=["happy", "sad"],
        class_questions=["who looks happier?", "who looks sadder?"],
        n_chain=1,
        max_trial=1,
        consensus_n=2,
        seed=3,
    )
    controller = TrialController(cfg)
    return TestClient(create_app(controller, ConsensusCoordinator(controller)))


def test_blockwise_round_trip(client):
    settings = client.post("/api/set_up", json={"names": "p1"}).json()
    assert settings["classes"] == ["happy", "sad"]
    assert settings["n_chain"] == 1

    trial = client.get("/api/next-trial", headers={"ID": "p1", "current_chain": "1"}).json()
    assert trial["trial_type"] == "likelihood"

    headers = {"ID": "p1", "trial_type": "likelihood", "current_chain": "1", "n_trial": "1"}
    res = client.post("/api/register-choice", headers=headers, json={"choice": trial["proposal_state"]})
    assert res.status_code == 200 and res.json()["finished"] == 0

    prior = client.get("/api/next-trial", headers={"ID": "p1", "current_chain": "1"}).json()
    assert prior["trial_type"] == "prior"
    headers["trial_type"] = "prior"
    res = client.post("/api/register-choice", headers=headers, json={"choice": prior["proposal"]})
    assert res.json() == {"finished": 1, "progress": 1.0}


def test_bad_vector_is_400(client):
    client.post("/api/set_up", json={"names": "p1"})
    headers = {"ID": "p1", "trial_type": "likelihood", "current_chain": "1"}
    res = client.post("/api/register-choice", headers=headers, json={"choice": [1.0, 2.0, 3.0]})
    assert res.status_code == 400
    assert res.json()["error"] == "DimensionMismatchError"


def test_unknown_chain_is_503(client):
    res = client.get("/api/next-trial", headers={"ID": "ghost", "current_chain": "1"})
    assert res.status_code == 503
    assert res.json()["error"] == "PersistenceError"


def test_attention_disabled_is_400(client):
    res = client.post("/api/register-attention", headers={"ID": "p1"}, json={"result": "fail"})
    assert res.status_code == 400


def test_consensus_flow(client):
    assert client.post("/api/consensus/join", json={"names": "A"}).json()["team_id"] == 1
    assert client.get("/api/consensus/waiting-room", headers={"team_id": "1"}).json() == {"count": 1}
    client.post("/api/consensus/join", json={"names": "B"})

    def poll(p):
        return client.get(
            "/api/consensus/next-trial",
            headers={"ID": p, "team_id": "1", "current_class": "happy", "current_chain": "1"},
        )

    def choose(p, choice):
        return client.post(
            "/api/consensus/register-choice",
            headers={"ID": p, "team_id": "1", "current_class": "happy", "current_chain": "1"},
            json={"choice": choice},
        )

    first = poll("A")
    assert first.status_code == 204
    assert first.headers["Retry-After"] == "2"
    assert poll("B").status_code == 200
    assert choose("A", 1).status_code == 409

    done = choose("B", 1)
    assert done.status_code == 200
    assert done.json()["finished"] == 1
    assert poll("A").status_code == 201
    assert poll("B").json() == {"status": "finished"}


def test_consensus_disabled():
    controller = TrialController(ExperimentConfig(dim=2, classes=["happy", "sad"]))
    client = TestClient(create_app(controller))
    assert client.post("/api/consensus/join", json={"names": "A"}).status_code == 404
