"""
OCR Sandbox Backend - snapshot trees and workflow scheduling for OCR projects

This package keeps the processing history of a project sandbox as a tree of
snapshots and runs workflow steps that extend it. It enables:

- Track based navigation of the snapshot tree (resolve, derived, path)
- Snapshot locking, reconfiguration and subtree removal
- Asynchronous workflow step execution that appends one snapshot per job
- METS file group bookkeeping for every snapshot
- Import of post-correction output into collections
- Zip export of snapshot output, optionally published to S3

Key Components:
    - main: FastAPI application and HTTP endpoint definitions
    - service: Subsystem boundary and error interpretation
    - sandbox: Sandbox with its snapshot tree and mutation lock
    - snapshot_tree: Track resolution, derivation and locking
    - job_manager: Job lifecycle and step execution coordinator
    - mets: METS parsing, production and file group naming
    - collection / export: Collection bridge and zip assembly
    - configuration: Config loading and merging logic

Usage:
    Run the API server with:
        uvicorn ocr_sandbox_backend.main:app --reload --host 0.0.0.0 --port 8000

    Set OCR_SANDBOX_WORKSPACE to choose the workspace folder and
    OCR_SANDBOX_CONFIG to merge a local YAML file over the defaults.
"""
