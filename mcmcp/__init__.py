"""Markov Chain Monte Carlo with People: chain engine, gatekeeper and diagnostics."""

from .chainlog import ChainKey, ChainLog, InMemoryChainLog, ParticipantLedger, Sample
from .config import ExperimentConfig, load_config
from .consensus import ConsensusCoordinator
from .controller import TrialController
from .convergence import gelman_rubin, geweke, is_converged
from .errors import (
    DimensionMismatchError,
    GatekeeperLoadError,
    GatekeeperRejectionLoop,
    MCMCPError,
    PersistenceError,
    RenderingServiceError,
    TurnViolationError,
)
from .gatekeeper import GaussianKDE, load_gatekeepers

__version__ = "0.1.0"
