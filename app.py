"""
Flask Web Application for the Counseling Form Engine

Thin JSON surface over FormController: one form session per (case, role).
"""

from flask import Flask, request, jsonify
import dataclasses
import logging
import threading

from form_engine.config import DEFAULT_FORMS_DIR, DEFAULT_PERMISSIONS_PATH, DEFAULT_RULES_PATH, DEFAULT_SCHEMA_PATH
from form_engine.core.form_controller import FormController
from form_engine.core.form_schema import FormSchema
from form_engine.errors import PersistenceError
from form_engine.persistence import FormDocumentPersistence, StagePermissionTable
from form_engine.results import (
    FAILURE_RESULTS,
    Busy,
    IllegalCommand,
    PermissionDenied,
    PersistenceFailed,
    ValidationFailed,
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Initialize Flask app
app = Flask(__name__)
app.config.update(
    FORMS_DIR=DEFAULT_FORMS_DIR,
    SCHEMA_PATH=DEFAULT_SCHEMA_PATH,
    RULES_PATH=DEFAULT_RULES_PATH,
    PERMISSIONS_PATH=DEFAULT_PERMISSIONS_PATH,
    DEFAULT_ROLE='counselor',
)
app.config.from_prefixed_env("FORM_ENGINE")

# Open form sessions, keyed by (case_id, role)
form_sessions = {}
sessions_lock = threading.Lock()

# Loaded once per schema path
_schemas = {}

STATUS_CODES = {
    PermissionDenied: 403,
    Busy: 409,
    ValidationFailed: 400,
    IllegalCommand: 400,
}


def get_schema():
    path = app.config['SCHEMA_PATH']
    if path not in _schemas:
        _schemas[path] = FormSchema(path)
    return _schemas[path]


def get_persistence():
    return FormDocumentPersistence(app.config['FORMS_DIR'])


def current_role():
    """Actor role from the X-Role header (authentication is out of scope)"""
    return request.headers.get('X-Role') or app.config['DEFAULT_ROLE']


def get_controller(case_id):
    with sessions_lock:
        return form_sessions.get((str(case_id), current_role()))


def result_payload(result):
    """JSON-safe dict for a result dataclass"""
    if isinstance(result, PersistenceFailed):
        return {
            'error': str(result.error),
            'tag': result.tag,
            'details': result.error.details,
            'section_key': result.section_key,
        }
    return dataclasses.asdict(result)


def result_response(result):
    """Map a controller result to (json, status)"""
    success = not isinstance(result, FAILURE_RESULTS)

    if isinstance(result, PersistenceFailed):
        status = 404 if result.tag == 'NotFound' else 502
    else:
        status = STATUS_CODES.get(type(result), 200)

    return jsonify({
        'success': success,
        'result': type(result).__name__,
        **result_payload(result),
    }), status


def form_not_open(case_id):
    return jsonify({
        'success': False,
        'error': f'No open form for case {case_id}. POST /api/forms/{case_id}/open first.'
    }), 400


@app.route('/api/forms', methods=['POST'])
def create_form():
    """Create a form document for a case"""
    data = request.get_json(silent=True) or {}
    case_id = data.get('case_id')

    if not case_id:
        return jsonify({'success': False, 'error': 'case_id is required'}), 400

    try:
        document = get_persistence().create_form(str(case_id), data.get('document'))
    except PersistenceError as e:
        logger.error(f"Error creating form for case {case_id}: {e}")
        return jsonify({'success': False, 'error': str(e), 'tag': e.tag}), 409

    return jsonify({'success': True, 'form_id': document['id'], 'case_id': document['case_id']}), 201


@app.route('/api/forms/<case_id>/open', methods=['POST'])
def open_form(case_id):
    """Load a case's form into a new session for the current role"""
    role = current_role()

    try:
        permission_table = StagePermissionTable(role, app.config['PERMISSIONS_PATH'])
        controller = FormController(
            get_schema(),
            get_persistence(),
            permission_table,
            role=role,
            rules_path=app.config['RULES_PATH'],
        )
    except (FileNotFoundError, ValueError) as e:
        logger.error(f"Error configuring form session: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500

    data = request.get_json(silent=True) or {}
    result = controller.open_case(case_id, workflow_permissions=data.get('workflow_permissions'))

    if isinstance(result, PersistenceFailed):
        return result_response(result)

    with sessions_lock:
        form_sessions[(str(case_id), role)] = controller

    response = {
        'success': True,
        'result': type(result).__name__,
        **result_payload(result),
        'snapshot': controller.snapshot(),
    }
    return jsonify(response)


@app.route('/api/forms/<case_id>', methods=['GET'])
def get_snapshot(case_id):
    controller = get_controller(case_id)
    if controller is None:
        return form_not_open(case_id)
    return jsonify({'success': True, 'snapshot': controller.snapshot()})


@app.route('/api/forms/<case_id>/fields', methods=['PUT'])
def set_field(case_id):
    """Body: {"path": "...", "value": ...}"""
    controller = get_controller(case_id)
    if controller is None:
        return form_not_open(case_id)

    data = request.get_json(silent=True) or {}
    return result_response(controller.set_field(data.get('path', ''), data.get('value')))


@app.route('/api/forms/<case_id>/groups/<group>/rows', methods=['POST'])
def add_row(case_id, group):
    """Body (optional): {"values": {...}}"""
    controller = get_controller(case_id)
    if controller is None:
        return form_not_open(case_id)

    data = request.get_json(silent=True) or {}
    return result_response(controller.add_row(group, data.get('values')))


@app.route('/api/forms/<case_id>/groups/<group>/rows/<int:row_id>', methods=['PUT'])
def update_row(case_id, group, row_id):
    """Body: {"field": "...", "value": ...}"""
    controller = get_controller(case_id)
    if controller is None:
        return form_not_open(case_id)

    data = request.get_json(silent=True) or {}
    return result_response(controller.update_row(group, row_id, data.get('field', ''), data.get('value')))


@app.route('/api/forms/<case_id>/groups/<group>/rows/<int:row_id>', methods=['DELETE'])
def remove_row(case_id, group, row_id):
    controller = get_controller(case_id)
    if controller is None:
        return form_not_open(case_id)

    return result_response(controller.remove_row(group, row_id))


@app.route('/api/forms/<case_id>/sections/<section_key>', methods=['POST'])
def save_section(case_id, section_key):
    """Body (optional): {"mode": "draft" | "commit"}"""
    controller = get_controller(case_id)
    if controller is None:
        return form_not_open(case_id)

    data = request.get_json(silent=True) or {}
    return result_response(controller.save_section(section_key, data.get('mode', 'draft')))


@app.route('/api/forms/<case_id>/complete', methods=['POST'])
def complete_form(case_id):
    controller = get_controller(case_id)
    if controller is None:
        return form_not_open(case_id)

    return result_response(controller.complete_form())


@app.route('/api/forms/<case_id>/case-state', methods=['PUT'])
def set_case_state(case_id):
    """
    Body: {"case_state": "welfare_rejected"}

    Stored on the form document, then applied to every open session of
    the case so all roles see the new lock state.
    """
    data = request.get_json(silent=True) or {}
    case_state = data.get('case_state')

    persistence = get_persistence()
    try:
        form_id = persistence.find_form_id(case_id)
        if form_id is None:
            return jsonify({'success': False, 'error': f'No counseling form for case {case_id}', 'tag': 'NotFound'}), 404
        persistence.update_case_status(form_id, case_state)
    except PersistenceError as e:
        logger.error(f"Error updating case state for {case_id}: {e}")
        return jsonify({'success': False, 'error': str(e), 'tag': e.tag}), 502

    with sessions_lock:
        controllers = [c for (cid, _), c in form_sessions.items() if cid == str(case_id)]

    result = None
    for controller in controllers:
        result = controller.set_case_state(case_state)

    return jsonify({
        'success': True,
        'case_state': case_state,
        'locked': result.locked if result is not None else None,
        'sessions_updated': len(controllers),
    })


if __name__ == '__main__':
    # Start Flask server
    print("\n" + "="*60)
    print("COUNSELING FORM ENGINE - WEB API")
    print("="*60)
    print(f"\nForms directory: {app.config['FORMS_DIR']}")
    print("Server starting on http://localhost:5000")
    print("\nPress Ctrl+C to stop the server")
    print("="*60 + "\n")

    app.run(debug=True, host='0.0.0.0', port=5000)
