#!/usr/bin/env python3
"""
Celery worker script for the storefront orders app.
Runs the worker with an embedded beat scheduler so the abandoned-order sweep fires.
"""

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

if __name__ == "__main__":
    from core.celery import celery_app
    
    # Start Celery worker
    celery_app.start([
        "worker",
        "--beat",
        "--loglevel=info",
        "--concurrency=4",
        "--without-gossip",
        "--without-mingle",
        "--without-heartbeat",
    ])
