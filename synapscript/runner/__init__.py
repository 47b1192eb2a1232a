"""
Runner components for SynapScript.

- process.py: Shell command execution with streaming output and timeouts
- materializer.py: Denylist scan and temp-file execution of generated code
- steps.py: Sequential, fail-fast step execution
- events.py: In-process event bus for run progress
- scheduler.py: APScheduler integration for cron-based scheduling
- executor.py: AutomationEngine tying execution, scheduling and history together
- db.py: Automation, execution log and API token storage
"""
