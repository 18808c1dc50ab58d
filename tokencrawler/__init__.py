"""
tokencrawler
Adaptive multi-phase site crawler: discovers a site's pages, gathers
per-page metadata and extracts raw style samples, with concurrency sized to
the site.

CLI Usage:
    python -m tokencrawler <initial|deepen|metadata|extract|all> [options]

Library Usage:
    from tokencrawler import PipelineOptions, run_pipeline
    report = run_pipeline("https://example.com", PipelineOptions(output_dir="out"))
"""

from .browser_pool import BrowserHandle, BrowserResourcePool, PlaywrightLauncher
from .cache import CacheManager
from .concurrency import ConcurrencyPolicy
from .errors import (
    ApplicationError,
    BrowserLaunchError,
    ConfigurationError,
    CrawlerError,
    ErrorHandler,
    FileSystemError,
    NetworkError,
    PhaseFailure,
    PipelineAborted,
    ValidationError,
)
from .models import (
    ConcurrencyConfig,
    Phase,
    PhaseOutcome,
    PipelineReport,
    PipelineState,
    SiteCategory,
    SiteProfile,
    Task,
    TaskResult,
)
from .monitor import PerformanceMonitor
from .phase_runner import PhaseRunner
from .phases import PhaseTask
from .pipeline import PipelineOrchestrator, arun_pipeline, run_pipeline
from .retry import RetryPolicy
from .run_config import PipelineOptions
from .site_classifier import SiteClassifier

__version__ = "0.1.0"

__all__ = [
    'run_pipeline',
    'arun_pipeline',
    'PipelineOrchestrator',
    'PipelineOptions',
    # Core engine
    'BrowserResourcePool',
    'BrowserHandle',
    'PlaywrightLauncher',
    'PhaseRunner',
    'PhaseTask',
    'RetryPolicy',
    'CacheManager',
    'SiteClassifier',
    'ConcurrencyPolicy',
    'PerformanceMonitor',
    # Data model
    'Phase',
    'Task',
    'TaskResult',
    'PhaseOutcome',
    'SiteCategory',
    'SiteProfile',
    'ConcurrencyConfig',
    'PipelineReport',
    'PipelineState',
    # Errors
    'CrawlerError',
    'ValidationError',
    'NetworkError',
    'FileSystemError',
    'ConfigurationError',
    'ApplicationError',
    'PhaseFailure',
    'BrowserLaunchError',
    'PipelineAborted',
    'ErrorHandler',
]
