"""
Engine configuration constants and default data file locations.

All JSON configuration lives in the repository-level data/ directory:
- counseling_form_schema.json: sections, fields, repeating groups
- derivation_rules.json: derived-field rule sets per schema version
- stage_permissions.json: per-role stage permission table
"""

from pathlib import Path

DATA_DIR = Path(__file__).resolve().parent.parent / "data"

DEFAULT_SCHEMA_PATH = str(DATA_DIR / "counseling_form_schema.json")
DEFAULT_RULES_PATH = str(DATA_DIR / "derivation_rules.json")
DEFAULT_PERMISSIONS_PATH = str(DATA_DIR / "stage_permissions.json")
DEFAULT_FORMS_DIR = "outputs/forms"

# Numeric outputs closer than this are treated as unchanged during propagation
NUMERIC_EPSILON = 1e-9

# Roles that bypass stage permission resolution entirely
SUPER_ADMIN_ROLES = frozenset({'super_admin', 'Super Administrator'})

# Case states that re-open a completed form for editing
REWORK_STATES = frozenset({'welfare_rejected'})

# Current canonical document version produced by the migration adapter
CURRENT_SCHEMA_VERSION = 2
