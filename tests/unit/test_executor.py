"""Unit Tests for AutomationEngine - runs, history and schedule sync"""
import threading
import time
from unittest.mock import MagicMock

import pytest

from synapscript.models import Automation
from synapscript.runner import db
from synapscript.runner.materializer import DangerousCodeError
from synapscript.runner.scheduler import parse_cron


def make_automation(commands=('echo hi',), trigger=None, code=None, name='Test automation'):
    data = {
        'name': name,
        'trigger': trigger or {'type': 'manual'},
        'actions': [{'description': f"run {c}", 'command': c} for c in commands],
    }
    if code:
        data['generated_code'] = code
    return Automation.from_dict(data)


SCHEDULED = {'type': 'schedule', 'cron_expression': '*/10 * * * *'}


class TestManualRuns:
    """Step runs through the engine"""

    def test_successful_run_is_logged(self, engine, recorder):
        """A completed run writes a success log"""
        saved = engine.save_automation(make_automation(['echo one', 'echo two']))
        entry = engine.run_automation(saved, triggered_by='tester')

        assert entry.success
        assert entry.output == 'one\ntwo\n'
        assert recorder.types()[-1] == 'automation-complete'

        stored = db.get_execution_log(entry.run_id, engine.db_path)
        assert stored['status'] == 'success'
        assert stored['triggered_by'] == 'tester'
        assert stored['automation_id'] == saved.id

    def test_failed_run_is_logged(self, engine, recorder):
        """A failing step produces a failed log with the error"""
        saved = engine.save_automation(make_automation(['echo a', 'false', 'echo b']))
        entry = engine.run_automation(saved)

        assert entry.status == 'failed'
        assert 'exit code 1' in entry.error
        assert recorder.types()[-1] == 'automation-failed'
        assert db.get_execution_logs(saved.id, db_path=engine.db_path)[0]['status'] == 'failed'

    def test_submit_returns_before_completion(self, engine, recorder):
        """Manual runs execute in the background"""
        saved = engine.save_automation(make_automation(['sleep 0.5']))

        start = time.time()
        handle = engine.submit_manual_run(saved)
        assert time.time() - start < 0.4
        assert handle.automation_id == saved.id

        entry = handle.result(timeout=10)
        assert entry.run_id == handle.run_id
        assert entry.success
        assert recorder.wait_for_terminal(timeout=1)

    def test_concurrent_runs_of_same_automation(self, engine, recorder):
        """Overlapping runs get their own run ids and both complete"""
        saved = engine.save_automation(make_automation(['sleep 0.3']))

        first = engine.submit_manual_run(saved)
        second = engine.submit_manual_run(saved)

        assert first.run_id != second.run_id
        assert first.result(timeout=10).success
        assert second.result(timeout=10).success
        completed = {e.run_id for e in recorder.of_type('automation-complete')}
        assert completed == {first.run_id, second.run_id}

    def test_crash_is_reported_and_logged(self, engine, recorder, monkeypatch):
        """An unexpected error fails the run instead of escaping"""
        saved = engine.save_automation(make_automation())
        monkeypatch.setattr(Automation, 'build_steps', MagicMock(side_effect=RuntimeError('boom')))

        entry = engine.run_automation(saved)

        assert entry.status == 'failed'
        assert 'boom' in entry.error
        assert recorder.types() == ['automation-failed']

    def test_run_by_id_unknown_returns_none(self, engine):
        """Ticks for deleted automations are a no-op"""
        assert engine.run_by_id('missing') is None

    def test_run_by_id_is_recorded_as_scheduled(self, engine):
        saved = engine.save_automation(make_automation())
        entry = engine.run_by_id(saved.id)

        assert entry.trigger_type == 'scheduled'
        assert entry.triggered_by == 'scheduler'


class TestGeneratedCode:
    """Automations carrying generated code"""

    def test_generated_code_takes_precedence(self, engine, recorder):
        """The script runs instead of the actions"""
        automation = make_automation(
            ['echo from-actions'], code={'language': 'bash', 'code': 'echo from-code'}
        )
        entry = engine.run_automation(engine.save_automation(automation))

        assert entry.success
        assert entry.output == 'from-code\n'
        assert [e.data['message'] for e in recorder.of_type('log')] == ['from-code']
        assert recorder.types()[-1] == 'automation-complete'

    def test_dangerous_generated_code_fails_run(self, engine, recorder):
        """Denylisted code fails the run without executing"""
        automation = make_automation(code={'language': 'bash', 'code': 'rm -rf /tmp/x'})
        entry = engine.run_automation(engine.save_automation(automation))

        assert entry.status == 'failed'
        assert 'dangerous pattern' in entry.error
        assert recorder.types() == ['automation-failed']

    def test_execute_generated_code_records_direct_run(self, engine):
        """Ad-hoc executions are logged with trigger type 'direct'"""
        result = engine.execute_generated_code('echo adhoc', 'bash', automation_id='auto-x')

        assert result.success
        logs = db.get_execution_logs('auto-x', db_path=engine.db_path)
        assert logs[0]['trigger_type'] == 'direct'
        assert logs[0]['output'] == 'adhoc\n'

    def test_execute_generated_code_rejects_dangerous(self, engine):
        with pytest.raises(DangerousCodeError):
            engine.execute_generated_code("eval('x')", 'javascript')


class TestScheduleSync:
    """Store writes keep the scheduler in step"""

    def test_save_arms_schedule(self, engine):
        saved = engine.save_automation(make_automation(trigger=SCHEDULED))
        assert engine.scheduler.is_scheduled(saved.id)

    def test_save_manual_does_not_arm(self, engine):
        saved = engine.save_automation(make_automation())
        assert not engine.scheduler.is_scheduled(saved.id)

    def test_update_to_manual_disarms(self, engine):
        """Switching the trigger off a schedule removes the job"""
        saved = engine.save_automation(make_automation(trigger=SCHEDULED))
        engine.update_automation(saved.id, {'trigger': {'type': 'manual'}})
        assert not engine.scheduler.is_scheduled(saved.id)

    def test_update_to_invalid_cron_disarms(self, engine):
        """An unusable new schedule leaves nothing armed"""
        saved = engine.save_automation(make_automation(trigger=SCHEDULED))
        engine.update_automation(saved.id, {'trigger': {'type': 'schedule', 'cron_expression': 'junk'}})
        assert not engine.scheduler.is_scheduled(saved.id)

    def test_update_rejects_invalid_record(self, engine):
        """Invalid updates raise and leave the stored automation alone"""
        saved = engine.save_automation(make_automation())
        with pytest.raises(ValueError):
            engine.update_automation(saved.id, {'trigger': {'type': 'telepathy'}})
        assert engine.get_automation(saved.id).trigger.type == 'manual'

    def test_update_missing_returns_none(self, engine):
        assert engine.update_automation('missing', {'name': 'x'}) is None

    def test_delete_disarms(self, engine):
        saved = engine.save_automation(make_automation(trigger=SCHEDULED))
        assert engine.delete_automation(saved.id) is True
        assert not engine.scheduler.is_scheduled(saved.id)

    def test_reconcile_all_from_store(self, engine):
        """Startup arms every stored schedule trigger"""
        db.create_automation(make_automation(trigger=SCHEDULED, name='one').to_dict(), engine.db_path)
        db.create_automation(make_automation(name='two').to_dict(), engine.db_path)

        assert engine.reconcile_all() == 1

    def test_concurrent_updates_leave_one_job(self, engine):
        """Racing updates converge on one job armed with the stored cron"""
        saved = engine.save_automation(make_automation(trigger=SCHEDULED))
        crons = ['*/5 * * * *', '0 9 * * *', '30 7 * * 1-5', '0 0 1 * *']
        threads = [
            threading.Thread(
                target=engine.update_automation,
                args=(saved.id, {'trigger': {'type': 'schedule', 'cron_expression': c}})
            )
            for c in crons
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(engine.scheduler._scheduler.get_jobs()) == 1

        stored_cron = engine.get_automation(saved.id).trigger.cron_expression
        armed = engine.scheduler._scheduler.get_jobs()[0]
        assert str(armed.trigger) == str(parse_cron(stored_cron))

    def test_update_racing_delete_leaves_no_orphan_job(self, engine):
        """An update that loses to a delete never re-arms the deleted automation"""
        for _ in range(10):
            saved = engine.save_automation(make_automation(trigger=SCHEDULED))
            update = threading.Thread(
                target=engine.update_automation,
                args=(saved.id, {'trigger': {'type': 'schedule', 'cron_expression': '0 9 * * *'}})
            )
            delete = threading.Thread(target=engine.delete_automation, args=(saved.id,))
            update.start()
            delete.start()
            update.join()
            delete.join()

            assert engine.get_automation(saved.id) is None
            assert not engine.scheduler.is_scheduled(saved.id)

        assert engine.scheduler._scheduler.get_jobs() == []
