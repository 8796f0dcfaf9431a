"""
Console Test Harness for FormController

Simple console loop to exercise a form session before going through Flask.

Usage:
    python main.py [case_id] [role]

If the case has no form yet, one is created from data/sample_form.json.
"""

import json
import logging
import sys

from form_engine.config import DATA_DIR
from form_engine.core.form_controller import FormController
from form_engine.core.form_schema import FormSchema
from form_engine.persistence import FormDocumentPersistence, StagePermissionTable
from form_engine.results import FAILURE_RESULTS, PersistenceFailed

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

HELP = """Commands:
  show [section]                      Show sections, or one section's values
  rows <group>                        Show a repeating group
  set <path> <value>                  Set a field (value parsed as JSON if possible)
  add <group>                         Add a row
  rm <group> <row_id>                 Remove a row
  row <group> <row_id> <field> <val>  Update a row field
  save <section> [commit]             Save a section (draft unless 'commit')
  complete                            Complete the form
  state <case_state>                  Change case state (e.g. welfare_rejected)
  help                                Show this help
  quit                                Exit"""


def print_separator(char="=", length=60):
    """Print a separator line"""
    print(char * length)


def parse_value(text):
    """JSON literal if it parses ('1200', 'true', 'null'), else the raw text"""
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text


def print_result(result):
    """Print a controller result"""
    marker = "✗" if isinstance(result, FAILURE_RESULTS) else "✓"
    print(f"\n{marker} {type(result).__name__}")

    if isinstance(result, PersistenceFailed):
        print(f"  [{result.tag}] {result.error}")
        return

    for name, value in vars(result).items():
        if name == 'changes':
            for change in value:
                origin = f" (via {change.origin})" if change.origin else ""
                print(f"  {change.path}: {change.old_value!r} -> {change.new_value!r}{origin}")
        else:
            print(f"  {name}: {value}")


def print_sections(controller):
    snapshot = controller.snapshot()
    print(f"\nForm {snapshot['form_id']} (case {snapshot['case_id']}, schema v{snapshot['schema_version']})")
    print(f"Complete: {snapshot['is_complete']}  Case state: {snapshot['case_state']}  Locked: {snapshot['locked']}")
    print_separator("-")
    for section in snapshot['sections']:
        access = "edit" if section['can_edit'] else ("view" if section['can_view'] else "hidden")
        current = " <" if section['key'] == snapshot['current_section'] else ""
        print(f"{section['order']}. {section['title']:<22} {section['state']:<11} [{access}]{current}")
        if section['missing_paths']:
            print(f"     missing: {', '.join(section['missing_paths'])}")
    print_separator("-")


def ensure_form(persistence, case_id):
    if persistence.find_form_id(case_id) is not None:
        return
    with open(DATA_DIR / "sample_form.json", 'r') as f:
        sample = json.load(f)
    document = persistence.create_form(case_id, sample)
    print(f"Created form {document['id']} for case {case_id} from sample_form.json")


def run_command(controller, parts):
    """Dispatch one console command. Returns False to exit."""
    command, args = parts[0].lower(), parts[1:]

    if command in ('quit', 'exit', 'stop'):
        return False
    if command == 'help':
        print(HELP)
    elif command == 'show' and not args:
        print_sections(controller)
    elif command == 'show':
        print(json.dumps(controller.snapshot()['values'].get(args[0], {}), indent=2))
    elif command == 'rows':
        print(json.dumps(controller.snapshot()['groups'].get(args[0], []), indent=2))
    elif command == 'set' and len(args) >= 2:
        print_result(controller.set_field(args[0], parse_value(" ".join(args[1:]))))
    elif command == 'add' and args:
        print_result(controller.add_row(args[0]))
    elif command == 'rm' and len(args) == 2:
        print_result(controller.remove_row(args[0], int(args[1])))
    elif command == 'row' and len(args) >= 4:
        print_result(controller.update_row(args[0], int(args[1]), args[2], parse_value(" ".join(args[3:]))))
    elif command == 'save' and args:
        mode = 'commit' if len(args) > 1 and args[1] == 'commit' else 'draft'
        print_result(controller.save_section(args[0], mode))
    elif command == 'complete':
        print_result(controller.complete_form())
    elif command == 'state' and args:
        print_result(controller.set_case_state(args[0]))
    else:
        print("Unrecognized command. Type 'help' for commands.")
    return True


def main():
    """Run console session"""
    case_id = sys.argv[1] if len(sys.argv) > 1 else "demo"
    role = sys.argv[2] if len(sys.argv) > 2 else "counselor"

    print_separator()
    print("COUNSELING FORM ENGINE - CONSOLE SESSION")
    print_separator()

    try:
        schema = FormSchema()
        persistence = FormDocumentPersistence()
        ensure_form(persistence, case_id)
        controller = FormController(schema, persistence, StagePermissionTable(role), role=role)
    except (FileNotFoundError, ValueError) as e:
        print(f"\nFailed to initialize: {e}")
        return 1

    loaded = controller.open_case(case_id)
    print_result(loaded)
    if isinstance(loaded, PersistenceFailed):
        return 1

    print_sections(controller)
    print(HELP)

    while True:
        try:
            line = input("> ").strip()
        except (KeyboardInterrupt, EOFError):
            print("\n\nSession interrupted by user")
            break

        if not line:
            continue

        try:
            if not run_command(controller, line.split()):
                break
        except ValueError as e:
            print(f"\nERROR: {e}")

    print_separator()
    print("Console session complete")
    print_separator()
    return 0


if __name__ == '__main__':
    sys.exit(main())
