"""
Configuration settings for the workflow runner.
"""

from pathlib import Path

# Settings forwarded to the page-side executor with every dispatched workflow.
# Workflow-level settings are merged first, these win on conflicts.
DEFAULT_SETTINGS = {
    "delayAfterClick": 800,
    "delayAfterInput": 400,
    "delayAfterSave": 1000,
    "maxRetries": 3,
    "logVerbose": False,
    "pauseOnError": False,
    "comboSelectMode": "method3",
    "suppressLookupWarnings": False,
    "labelLanguage": "en-us",
    "dateFormat": "DDMMYYYY",
}

# Where durable run state (resume points, queued workflows, handlers) lives
DEFAULT_STATE_FILE = Path("output/runner_state.json")

# A second resume-after-navigation call for the same workflow and step
# inside this window (seconds) is ignored
RESUME_DEDUP_WINDOW = 5.0

# How long the executor waits for the target page after navigating (ms)
DEFAULT_WAIT_FOR_LOAD_MS = 3000

# Subworkflows nested deeper than this are rejected
MAX_SUBWORKFLOW_DEPTH = 25

# Maximum nesting of dicts/lists inside a single step when scanning for ${param}
MAX_PARAM_SCAN_DEPTH = 50

# Destinations whose URL starts with one of these cannot run workflows
BLOCKED_URL_PREFIXES = ("chrome://", "chrome-extension://", "about:", "edge://")

# Run log entries kept in memory by the orchestrator
MAX_RUN_LOG_ENTRIES = 500

# Query parameter holding the menu item name in target page URLs
MENU_ITEM_QUERY_PARAM = "mi"
