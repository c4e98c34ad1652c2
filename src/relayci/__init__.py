from .config import load_document, load_document_text, load_workflow
from .dsl import attach, build, cached, checkout, job, matrix, persist, sh, wf, JobBuilder
from .model import CacheDirective, JobRun, JobSpec, JobState, Reason, Step, Workflow, WorkflowRunSnapshot
from .scheduler import Scheduler, WorkflowRunHandle

__all__ = [
    "load_document", "load_document_text", "load_workflow",
    "attach", "build", "cached", "checkout", "job", "matrix", "persist", "sh", "wf", "JobBuilder",
    "CacheDirective", "JobRun", "JobSpec", "JobState", "Reason", "Step", "Workflow", "WorkflowRunSnapshot",
    "Scheduler", "WorkflowRunHandle",
]
