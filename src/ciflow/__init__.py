from .dsl import job, sh, uses, gate, wf, workflow, JobBuilder, build
from .model import Conclusion, Job, JobInstance, Outcome, PipelineResult, Step, Workflow
from .runner import Scheduler, ShellStepRunner, StepRunner, plan, run_workflow

__all__ = [
    "job", "sh", "uses", "gate", "wf", "workflow", "JobBuilder", "build",
    "Conclusion", "Job", "JobInstance", "Outcome", "PipelineResult", "Step", "Workflow",
    "Scheduler", "ShellStepRunner", "StepRunner", "plan", "run_workflow",
]
