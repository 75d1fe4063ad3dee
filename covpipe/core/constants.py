"""
Constants
Centralised storage for step names, artifact layout, and trigger rules.
"""
# Artifact contract shared with the publication consumer
ARTIFACT_NAME = "codecov_report"
REPORT_FILE = "cobertura.xml"
PR_NUMBER_FILE = "pr_number.txt"
COMMIT_SHA_FILE = "commit_sha.txt"
ARTIFACT_FILES = (REPORT_FILE, PR_NUMBER_FILE, COMMIT_SHA_FILE)
MANIFEST_FILE = "manifest.json"

# Ordered step names as they appear in run records
STEP_CHECKOUT = "checkout"
STEP_SYSTEM_PACKAGES = "install-system-packages"
STEP_TOOLCHAIN = "install-toolchain"
STEP_DELETE_OVERRIDES = "delete-override-files"
STEP_RESTORE_CACHE = "restore-cache"
STEP_INSTRUMENTATION = "install-instrumentation"
STEP_PROVISION = "provision-service"
STEP_COVERAGE = "run-coverage"
STEP_PACKAGE = "package-handoff"
STEP_SAVE_CACHE = "save-cache"

# Pull request actions that start a run
PR_ACTIONS = frozenset({"opened", "synchronize", "reopened"})

# Error classifications
ERROR_INFRASTRUCTURE = "infrastructure"
ERROR_TEST = "test"
ERROR_PACKAGING = "packaging"
ERROR_CONFIGURATION = "configuration"
