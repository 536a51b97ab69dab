"""
UAT Tracker
SQLAlchemy extension instance shared by every model module.

Usage:
    from uat_tracker.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
