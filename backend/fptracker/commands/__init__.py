# backend/fptracker/commands/__init__.py
"""
Command-line utilities for the fire-proofing tracker.

Commands:
    - init_db: Create the database tables
    - recover_upload: Clean up, retry or delete the batches of one upload
    - sweep_orphans: Delete elements missing their workflow jobs, and jobs without elements
    - sweep_stalled_uploads: Resolve upload sessions abandoned by a crashed worker

Usage:
    python -m fptracker.commands.init_db
    python -m fptracker.commands.recover_upload retry <upload_id>
    python -m fptracker.commands.sweep_orphans --hours 24
    python -m fptracker.commands.sweep_stalled_uploads --dry-run
"""
