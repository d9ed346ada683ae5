# ============================================================================
# assessment_ingest/base/__init__.py
# Foundational components shared by the rest of the package.
# ============================================================================
#
# WHAT'S IN THIS MODULE:
# - config.py: Storage paths, processor behavior, logging setup
#
