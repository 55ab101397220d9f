"""
Leadflow Background Workers

Run the job worker as a separate process:
    python -m leadflow.workers.job_worker
"""
