"""Unit Tests for the SynapScript database layer"""
import json
import sqlite3

import pytest

from synapscript.runner import db


def sample_automation(**overrides):
    automation = {
        'name': 'Battery check',
        'trigger': {'type': 'schedule', 'cron_expression': '0 * * * *'},
        'actions': [{'description': 'Read battery', 'kind': 'termux_api', 'command': 'termux-battery-status'}],
        'generated_code': {'language': 'bash', 'code': 'termux-battery-status'},
    }
    automation.update(overrides)
    return automation


class TestAutomations:
    """CRUD over the automations table"""

    def test_create_and_get(self, db_path):
        """JSON columns round-trip and timestamps are set"""
        created = db.create_automation(sample_automation(), db_path)

        assert created['id']
        assert created['trigger'] == {'type': 'schedule', 'cron_expression': '0 * * * *'}
        assert created['actions'][0]['command'] == 'termux-battery-status'
        assert created['created_at'] == created['updated_at']
        assert db.get_automation(created['id'], db_path) == created

    def test_create_keeps_given_id(self, db_path):
        """An explicit id is used as-is"""
        created = db.create_automation(sample_automation(id='fixed-id'), db_path)
        assert created['id'] == 'fixed-id'

    def test_missing_generated_code_is_none(self, db_path):
        """Automations without code decode to None, not the string 'null'"""
        created = db.create_automation(sample_automation(generated_code=None), db_path)
        assert created['generated_code'] is None

    def test_update_only_allowed_fields(self, db_path):
        """Unknown fields are ignored and updated_at moves"""
        created = db.create_automation(sample_automation(), db_path)
        updated = db.update_automation(
            created['id'], {'name': 'Renamed', 'created_at': 0, 'bogus': 1}, db_path
        )

        assert updated['name'] == 'Renamed'
        assert updated['created_at'] == created['created_at']
        assert updated['updated_at'] >= created['updated_at']

    def test_update_missing_returns_none(self, db_path):
        assert db.update_automation('nope', {'name': 'x'}, db_path) is None

    def test_delete(self, db_path):
        """Delete reports whether a row was removed"""
        created = db.create_automation(sample_automation(), db_path)
        assert db.delete_automation(created['id'], db_path) is True
        assert db.delete_automation(created['id'], db_path) is False
        assert db.get_automation(created['id'], db_path) is None

    def test_list_and_count(self, db_path):
        db.create_automation(sample_automation(name='A'), db_path)
        db.create_automation(sample_automation(name='B'), db_path)

        assert db.count_automations(db_path) == 2
        assert {a['name'] for a in db.get_all_automations(db_path)} == {'A', 'B'}


class TestJsonMigration:
    """Legacy automations.json import"""

    def test_imports_into_empty_table(self, db_path, tmp_path):
        """Entries are imported and the file removed"""
        legacy = tmp_path / 'automations.json'
        legacy.write_text(json.dumps([sample_automation(id='one'), sample_automation(id='two')]))

        assert db.migrate_from_json(legacy, db_path) == 2
        assert not legacy.exists()
        assert db.get_automation('one', db_path) is not None

    def test_skipped_when_table_has_rows(self, db_path, tmp_path):
        """Existing data is never overwritten"""
        db.create_automation(sample_automation(), db_path)
        legacy = tmp_path / 'automations.json'
        legacy.write_text(json.dumps([sample_automation(id='late')]))

        assert db.migrate_from_json(legacy, db_path) == 0
        assert legacy.exists()
        assert db.get_automation('late', db_path) is None

    def test_invalid_record_imports_nothing(self, db_path, tmp_path):
        """A bad record aborts the whole import and a fixed file can be retried"""
        legacy = tmp_path / 'automations.json'
        nameless = {'id': 'two', 'trigger': {'type': 'manual'}}
        legacy.write_text(json.dumps([sample_automation(id='one'), nameless]))

        with pytest.raises(ValueError, match='Record 1'):
            db.migrate_from_json(legacy, db_path)
        assert db.count_automations(db_path) == 0
        assert legacy.exists()

        legacy.write_text(json.dumps([sample_automation(id='one'), sample_automation(id='two')]))
        assert db.migrate_from_json(legacy, db_path) == 2

    def test_duplicate_ids_roll_back(self, db_path, tmp_path):
        """A write failure partway through leaves the table empty"""
        legacy = tmp_path / 'automations.json'
        legacy.write_text(json.dumps([sample_automation(id='same'), sample_automation(id='same')]))

        with pytest.raises(sqlite3.IntegrityError):
            db.migrate_from_json(legacy, db_path)
        assert db.count_automations(db_path) == 0
        assert legacy.exists()

    def test_missing_file(self, db_path, tmp_path):
        assert db.migrate_from_json(tmp_path / 'absent.json', db_path) == 0


class TestExecutionLogs:
    """Execution history"""

    def test_log_and_fetch_by_run_id(self, db_path):
        """A logged run is retrievable by its run id"""
        db.log_execution('auto-1', 'run-1', 'success', output='ok', db_path=db_path)

        entry = db.get_execution_log('run-1', db_path)
        assert entry['automation_id'] == 'auto-1'
        assert entry['status'] == 'success'
        assert entry['output'] == 'ok'
        assert entry['trigger_type'] == 'manual'

    def test_logs_newest_first_with_limit(self, db_path):
        """History is ordered newest first and capped"""
        for i in range(5):
            db.log_execution(
                'auto-1', f"run-{i}", 'success',
                timestamp=f"2026-01-0{i + 1}T00:00:00", db_path=db_path
            )
        db.log_execution('other', 'run-x', 'failed', db_path=db_path)

        logs = db.get_execution_logs('auto-1', limit=3, db_path=db_path)
        assert [log['run_id'] for log in logs] == ['run-4', 'run-3', 'run-2']

    def test_unknown_run(self, db_path):
        assert db.get_execution_log('missing', db_path) is None


class TestApiTokens:
    """Bearer tokens issued by pairing"""

    def test_create_get_delete(self, db_path):
        db.create_api_token('tok', 'phone', db_path)

        assert db.get_api_token('tok', db_path)['description'] == 'phone'
        assert db.delete_api_token('tok', db_path) is True
        assert db.get_api_token('tok', db_path) is None
