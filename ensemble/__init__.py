"""In-process quorum ensembles for failover tests."""

from .testing import InstanceSpec, LocalEnsemble, make_specs
from .quorum import ConnectionLossError, EnsembleClient
