"""
Core orchestration engine.

The `TaskSupervisor` decides which tasks may run and spawns one `TaskWorker`
process per task; the `Scheduler` drives the supervisor on a fixed interval and
evaluates the cron expressions that decide when a task is next due.
"""
