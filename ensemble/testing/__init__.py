from .cluster import EnsembleEntry, LocalEnsemble
from .instance_spec import InstanceSpec, make_specs
