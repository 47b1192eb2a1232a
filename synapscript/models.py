"""
Data model for SynapScript automations.

Automations are owned by the persistence store; Steps exist only for the
duration of a single run and are summarized into an ExecutionLog.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


TRIGGER_MANUAL = 'manual'
TRIGGER_SCHEDULE = 'schedule'
TRIGGER_EVENT = 'event'
TRIGGER_TYPES = (TRIGGER_MANUAL, TRIGGER_SCHEDULE, TRIGGER_EVENT)

ACTION_KINDS = ('termux_api', 'node_script', 'bash_command')
LANGUAGES = ('javascript', 'bash')

STEP_PENDING = 'pending'
STEP_IN_PROGRESS = 'in-progress'
STEP_COMPLETED = 'completed'
STEP_FAILED = 'failed'

RUN_SUCCESS = 'success'
RUN_FAILED = 'failed'


@dataclass
class Trigger:
    """How an automation is started."""
    type: str = TRIGGER_MANUAL
    cron_expression: Optional[str] = None
    description: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'Trigger':
        if not data:
            return cls()
        trigger_type = data.get('type') or TRIGGER_MANUAL
        if trigger_type not in TRIGGER_TYPES:
            raise ValueError(f"Unknown trigger type: {trigger_type}")
        return cls(
            type=trigger_type,
            cron_expression=(
                data.get('cron_expression') or data.get('cronExpression') or data.get('cron')
            ),
            description=data.get('description'),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {'type': self.type}
        if self.cron_expression is not None:
            data['cron_expression'] = self.cron_expression
        if self.description is not None:
            data['description'] = self.description
        return data


@dataclass
class Action:
    """One ordered unit of work inside an automation."""
    description: str = ""
    icon: str = ""
    kind: str = 'bash_command'
    command: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Action':
        kind = data.get('kind') or data.get('type') or 'bash_command'
        if kind not in ACTION_KINDS:
            raise ValueError(f"Unknown action kind: {kind}")
        return cls(
            description=data.get('description', ''),
            icon=data.get('icon', ''),
            kind=kind,
            command=data.get('command') or '',
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'description': self.description,
            'icon': self.icon,
            'kind': self.kind,
            'command': self.command,
        }


@dataclass
class GeneratedCode:
    """A single generated script attached to an automation."""
    language: str
    code: str

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional['GeneratedCode']:
        if not data or not data.get('code'):
            return None
        language = data.get('language') or 'javascript'
        if language not in LANGUAGES:
            raise ValueError(f"Unsupported language: {language}")
        return cls(language=language, code=data['code'])

    def to_dict(self) -> Dict[str, Any]:
        return {'language': self.language, 'code': self.code}


@dataclass
class Automation:
    """
    A named, triggerable unit of work.

    Timestamps are epoch milliseconds, matching what the store writes.
    """
    name: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    trigger: Trigger = field(default_factory=Trigger)
    actions: List[Action] = field(default_factory=list)
    generated_code: Optional[GeneratedCode] = None
    created_at: Optional[int] = None
    updated_at: Optional[int] = None

    @property
    def is_scheduled(self) -> bool:
        return self.trigger.type == TRIGGER_SCHEDULE

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Automation':
        """Build an Automation from a store row or an API payload."""
        if not data.get('name'):
            raise ValueError("Automation name is required")
        kwargs = {
            'name': data['name'],
            'trigger': Trigger.from_dict(data.get('trigger')),
            'actions': [Action.from_dict(a) for a in data.get('actions') or []],
            'generated_code': GeneratedCode.from_dict(data.get('generated_code')),
            'created_at': data.get('created_at'),
            'updated_at': data.get('updated_at'),
        }
        if data.get('id'):
            kwargs['id'] = data['id']
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'trigger': self.trigger.to_dict(),
            'actions': [a.to_dict() for a in self.actions],
            'generated_code': self.generated_code.to_dict() if self.generated_code else None,
            'created_at': self.created_at,
            'updated_at': self.updated_at,
        }

    def build_steps(self) -> List['Step']:
        """Fresh, all-pending steps for one run of this automation."""
        return [
            Step(label=action.description or action.command, command=action.command)
            for action in self.actions
        ]


@dataclass
class Step:
    """One action instance during a single run."""
    label: str
    command: str = ""
    status: str = STEP_PENDING

    def to_dict(self) -> Dict[str, Any]:
        return {'label': self.label, 'status': self.status, 'command': self.command}


@dataclass
class ExecutionLog:
    """Summary of one completed or failed run."""
    automation_id: Optional[str]
    status: str
    output: str = ""
    error: Optional[str] = None
    run_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    trigger_type: str = 'manual'
    triggered_by: Optional[str] = None
    duration_seconds: float = 0.0
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())

    @property
    def success(self) -> bool:
        return self.status == RUN_SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        return {
            'automation_id': self.automation_id,
            'run_id': self.run_id,
            'status': self.status,
            'output': self.output,
            'error': self.error,
            'trigger_type': self.trigger_type,
            'triggered_by': self.triggered_by,
            'duration_seconds': self.duration_seconds,
            'timestamp': self.timestamp,
        }
