"""
Service Log Engine — model package.

``db`` is the single Flask-SQLAlchemy handle.  Model modules import it from
here; the application factory binds it with ``db.init_app(app)``.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
