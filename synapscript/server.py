#!/usr/bin/env python3
"""
SynapScript Bridge Server

HTTP API for managing and running automations, plus a WebSocket stream of
run events (step-update, log, automation-complete, automation-failed).
"""

import os
import json
import sqlite3
import logging
from pathlib import Path
from queue import Empty

from flask import Flask, jsonify, request
from flask_sock import Sock
from simple_websocket import ConnectionClosed

# Load environment variables
from dotenv import load_dotenv
load_dotenv(Path(__file__).parent.parent / '.env')

from synapscript import auth
from synapscript.models import Automation
from synapscript.planner import Planner, PlannerError, PlannerQuotaError
from synapscript.runner import db
from synapscript.runner.executor import AutomationEngine
from synapscript.runner.materializer import DangerousCodeError
from synapscript.runner.scheduler import humanize_cron


logger = logging.getLogger('synapscript.server')

app = Flask(__name__)

# Auth can be disabled for local development only
app.config['REQUIRE_AUTH'] = os.environ.get('SYNAPSCRIPT_REQUIRE_AUTH', '1').lower() not in ('0', 'false', 'no')
app.config['DB_PATH'] = db.DEFAULT_DB_PATH

# Initialize Flask-Sock for the event stream
sock = Sock(app)

_engine = None
_planner = None


def get_engine() -> AutomationEngine:
    """Get the process-wide engine, creating it on first use."""
    global _engine
    if _engine is None:
        _engine = AutomationEngine(db_path=app.config['DB_PATH'])
    return _engine


def set_engine(engine: AutomationEngine) -> None:
    global _engine
    _engine = engine
    app.config['DB_PATH'] = engine.db_path


def get_planner() -> Planner:
    global _planner
    if _planner is None:
        _planner = Planner()
    return _planner


def set_planner(planner: Planner) -> None:
    global _planner
    _planner = planner


# ============================================
# Health & Pairing
# ============================================

@app.route('/')
def index():
    return 'SynapScript Bridge is running!'


@app.route('/api/health')
def api_health():
    """Scheduler status for monitoring."""
    scheduler = get_engine().scheduler
    return jsonify({
        'status': 'ok',
        'scheduler_running': scheduler.running,
        'scheduled_jobs': len(scheduler.jobs()),
    })


@app.route('/api/pair/initiate', methods=['POST'])
def api_pair_initiate():
    """Start pairing a new client."""
    pairing = auth.initiate_pairing()
    logger.info(f"Pairing initiated. Code: {pairing['code']}")
    return jsonify(pairing)


@app.route('/api/pair/complete', methods=['POST'])
def api_pair_complete():
    """Exchange a pairing code for an API token."""
    data = request.get_json(silent=True) or {}
    if not data.get('code'):
        return jsonify({'error': 'Pairing code required'}), 400

    token = auth.complete_pairing(data['code'], data.get('description'), app.config['DB_PATH'])
    if not token:
        return jsonify({'error': 'Invalid or expired pairing code'}), 401
    return jsonify({'token': token})


# ============================================
# Automations API
# ============================================

@app.route('/api/automations')
@auth.requires_token
def api_automations():
    """Get all automations."""
    try:
        automations = get_engine().list_automations()
        return jsonify({'automations': [a.to_dict() for a in automations]})
    except Exception as e:
        logger.error(f"Failed to list automations: {e}")
        return jsonify({'error': str(e)}), 500


@app.route('/api/automations', methods=['POST'])
@auth.requires_token
def api_create_automation():
    """Create an automation and arm its schedule."""
    data = request.get_json(silent=True)
    if not data:
        return jsonify({'error': 'No data provided'}), 400

    try:
        automation = Automation.from_dict(data)
    except ValueError as e:
        return jsonify({'error': str(e)}), 400

    saved = get_engine().save_automation(automation)
    return jsonify(saved.to_dict()), 201


@app.route('/api/automations/generate', methods=['POST'])
@auth.requires_token
def api_generate_automation():
    """Plan an automation from free text, then store and schedule it."""
    data = request.get_json(silent=True) or {}
    prompt = (data.get('prompt') or data.get('command') or '').strip()
    if not prompt:
        return jsonify({'error': 'Prompt required'}), 400

    try:
        automation = get_planner().plan(prompt)
    except DangerousCodeError as e:
        return jsonify({'error': str(e)}), 400
    except PlannerQuotaError as e:
        return jsonify({'error': str(e)}), 429
    except PlannerError as e:
        logger.error(f"Planning failed for '{prompt}': {e}")
        return jsonify({'error': str(e)}), 502

    saved = get_engine().save_automation(automation)
    return jsonify(saved.to_dict()), 201


@app.route('/api/automations/<automation_id>')
@auth.requires_token
def api_automation(automation_id):
    """Get a single automation by ID."""
    automation = get_engine().get_automation(automation_id)
    if not automation:
        return jsonify({'error': 'Automation not found'}), 404
    return jsonify(automation.to_dict())


@app.route('/api/automations/<automation_id>', methods=['PUT'])
@auth.requires_token
def api_update_automation(automation_id):
    """Update an automation and re-sync its schedule."""
    data = request.get_json(silent=True)
    if not data:
        return jsonify({'error': 'No data provided'}), 400

    try:
        automation = get_engine().update_automation(automation_id, data)
    except ValueError as e:
        return jsonify({'error': str(e)}), 400

    if not automation:
        return jsonify({'error': 'Automation not found'}), 404
    return jsonify(automation.to_dict())


@app.route('/api/automations/<automation_id>', methods=['DELETE'])
@auth.requires_token
def api_delete_automation(automation_id):
    """Delete an automation and its schedule."""
    if not get_engine().delete_automation(automation_id):
        return jsonify({'error': 'Automation not found'}), 404
    return jsonify({'success': True})


@app.route('/api/automations/<automation_id>/run', methods=['POST'])
@auth.requires_token
def api_run_automation(automation_id):
    """Manually trigger an automation. Progress arrives on /ws."""
    engine = get_engine()
    automation = engine.get_automation(automation_id)
    if not automation:
        return jsonify({'error': 'Automation not found'}), 404

    handle = engine.submit_manual_run(automation, triggered_by='api')
    return jsonify({'run_id': handle.run_id, 'automation_id': handle.automation_id}), 202


@app.route('/api/automations/<automation_id>/logs')
@auth.requires_token
def api_automation_logs(automation_id):
    """Get execution history for an automation."""
    limit = request.args.get('limit', 20, type=int)
    logs = db.get_execution_logs(automation_id, limit=limit, db_path=get_engine().db_path)
    return jsonify({'logs': logs})


@app.route('/api/runs/<run_id>')
@auth.requires_token
def api_run(run_id):
    """Get the execution log of a specific run."""
    entry = db.get_execution_log(run_id, db_path=get_engine().db_path)
    if not entry:
        return jsonify({'error': 'Run not found'}), 404
    return jsonify(entry)


@app.route('/api/execute', methods=['POST'])
@auth.requires_token
def api_execute():
    """Run generated code and return its output."""
    data = request.get_json(silent=True) or {}
    code = data.get('code')
    if not code:
        return jsonify({'error': 'Code required'}), 400

    try:
        result = get_engine().execute_generated_code(
            code, data.get('language', 'javascript'), data.get('automation_id')
        )
    except DangerousCodeError as e:
        return jsonify({'error': str(e)}), 400
    except ValueError as e:
        return jsonify({'error': str(e)}), 400

    return jsonify(result.to_dict())


@app.route('/api/schedule')
@auth.requires_token
def api_schedule():
    """Active scheduled jobs with their next fire time."""
    engine = get_engine()
    jobs = []
    for automation_id, next_run in engine.scheduler.jobs().items():
        automation = engine.get_automation(automation_id)
        cron = automation.trigger.cron_expression if automation else None
        jobs.append({
            'automation_id': automation_id,
            'name': automation.name if automation else None,
            'cron_expression': cron,
            'schedule_human': humanize_cron(cron),
            'next_run_at': next_run.isoformat() if next_run else None,
        })
    return jsonify({'jobs': jobs})


# ============================================
# Event Stream
# ============================================

@sock.route('/ws')
def event_stream(ws):
    """Forward every run event to the connected client as JSON."""
    if app.config.get('REQUIRE_AUTH', True):
        token = request.args.get('token') or auth.get_bearer_token()
        if not auth.is_valid_token(token, app.config['DB_PATH']):
            ws.close(reason=1008, message='Not authenticated')
            return

    bus = get_engine().bus
    queue = bus.subscribe_queue()
    logger.info("Client connected to event stream")

    try:
        while ws.connected:
            try:
                event = queue.get(timeout=1)
            except Empty:
                continue
            ws.send(json.dumps(event.to_dict()))
    except ConnectionClosed:
        pass
    finally:
        bus.unsubscribe_queue(queue)
        logger.info("Client disconnected from event stream")


def main():
    """Run the bridge server"""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    engine = get_engine()
    try:
        migrated = db.migrate_from_json(Path('automations.json'), engine.db_path)
    except (ValueError, sqlite3.Error) as e:
        logger.error(f"Skipping automations.json import: {e}")
        migrated = 0
    if migrated:
        logger.info(f"Imported {migrated} automations from automations.json")
    scheduled = engine.start()
    logger.info(f"Armed {scheduled} scheduled automations")

    port = int(os.environ.get('PORT', 3001))
    logger.info(f"Server is running on port {port}")
    try:
        app.run(host='0.0.0.0', port=port, debug=False)
    finally:
        engine.shutdown(wait=False)


if __name__ == '__main__':
    main()
