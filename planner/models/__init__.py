"""
Consultant Allocation Planner
SQLAlchemy models package.

``db`` is the single Flask-SQLAlchemy handle; model modules import it from
here and ``create_app`` binds it to the application.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
