"""
crashguard harness
Worker spawning and kill injection, post-crash verification and classification.
"""

from .crash_harness import AfterDelay, CrashInjectionHarness, OnMessage, WorkerHandle, WorkerSpawnError, WorkerSpec
from .verification import CheckResult, IntegrityReport, OpenResult, VerificationPipeline
from .classifier import CorruptionLabel, CorruptionVerdict, classify
from .scenarios import SCENARIOS, Scenario, ScenarioKind, ScenarioOrchestrator, ScenarioResult, get_scenario

__all__ = [
    'AfterDelay',
    'CrashInjectionHarness',
    'OnMessage',
    'WorkerHandle',
    'WorkerSpawnError',
    'WorkerSpec',
    'CheckResult',
    'IntegrityReport',
    'OpenResult',
    'VerificationPipeline',
    'CorruptionLabel',
    'CorruptionVerdict',
    'classify',
    'SCENARIOS',
    'Scenario',
    'ScenarioKind',
    'ScenarioOrchestrator',
    'ScenarioResult',
    'get_scenario'
]
