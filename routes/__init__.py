"""Blueprint registration."""

from routes.billing import billing_bp
from routes.jobs import jobs_bp
from routes.team import team_bp

ALL_BLUEPRINTS = [
    billing_bp,
    team_bp,
    jobs_bp,
]


def register_blueprints(app):
    """Register all application blueprints on *app*."""
    for bp in ALL_BLUEPRINTS:
        app.register_blueprint(bp)
