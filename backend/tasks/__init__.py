# backend/tasks/__init__.py
"""
Celery task modules; celery_app includes them by name
"""

__all__ = ['ab_testing']
