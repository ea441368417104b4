from sqlalchemy import Column, String, Integer, Text, Float, ForeignKey
from xenoflow.db.database import Base


class Workflow(Base):
    __tablename__ = "workflows"

    id = Column(String, primary_key=True)
    definition = Column(Text, nullable=False)
    created_at = Column(String, nullable=False)


class WorkflowRun(Base):
    __tablename__ = "workflow_runs"

    id = Column(String, primary_key=True)
    workflow_id = Column(String, ForeignKey("workflows.id"), nullable=False)
    status = Column(String, nullable=False, default="PENDING")
    inputs = Column(Text, nullable=False, default="{}")
    outputs = Column(Text, nullable=True)
    error = Column(Text, nullable=True)
    started_at = Column(String, nullable=False)
    finished_at = Column(String, nullable=True)


class TaskInstance(Base):
    __tablename__ = "task_instances"

    id = Column(String, primary_key=True)
    run_id = Column(String, ForeignKey("workflow_runs.id"), nullable=False)
    task_id = Column(String, nullable=False)
    command = Column(Text, nullable=False)
    status = Column(String, nullable=False, default="PENDING")
    attempts = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=0)
    preemptible = Column(Integer, nullable=False, default=0)
    cpu = Column(Integer, nullable=True)
    memory_gb = Column(Float, nullable=True)
    disk_gb = Column(Integer, nullable=True)
    image = Column(String, nullable=True)
    outputs = Column(Text, nullable=True)
    exit_code = Column(Integer, nullable=True)
    stdout_path = Column(Text, nullable=True)
    stderr_path = Column(Text, nullable=True)
    error_kind = Column(String, nullable=True)
    error = Column(Text, nullable=True)
    started_at = Column(String, nullable=True)
    finished_at = Column(String, nullable=True)
    worker_id = Column(String, nullable=True)
