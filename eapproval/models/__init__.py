"""
Electronic Approval Engine
SQLAlchemy extension instance shared by every model module.

Model modules import ``db`` from here; the app factory binds it with
``db.init_app(app)``.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
