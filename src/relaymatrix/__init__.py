from .dsl import axis, case, family, features, matrix
from .environment import EnvironmentProvider, NixBackend, StaticBackend
from .expand import expand
from .model import Job, JobOutcome, MatrixSpec, RunReport
from .quarantine import QuarantineRegistry
from .runner import run_matrix
from .scheduler import JobScheduler
from .suite import TestSuiteRunner

__all__ = [
    "axis",
    "case",
    "family",
    "features",
    "matrix",
    "expand",
    "run_matrix",
    "EnvironmentProvider",
    "NixBackend",
    "StaticBackend",
    "Job",
    "JobOutcome",
    "MatrixSpec",
    "RunReport",
    "QuarantineRegistry",
    "JobScheduler",
    "TestSuiteRunner",
]
