import atexit
import logging

from flask import Flask, jsonify

from config import Config
from extensions import db, mail, migrate
from billing import billing_bp
import models  # noqa: F401 - registers tables on db.metadata


def create_app(config_object=Config):
    app = Flask(__name__)

    # Load configuration from Config (falls back to sensible defaults inside Config)
    app.config.from_object(config_object)
    app.logger.setLevel(getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO))

    db.init_app(app)
    mail.init_app(app)
    migrate.init_app(app, db)

    app.register_blueprint(billing_bp)

    @app.route("/health")
    def health():
        return jsonify({"status": "ok", "app": app.config.get("APP_NAME")})

    if app.config.get("SCHEDULER_ENABLED"):
        from scheduler import start_scheduler

        state = start_scheduler(app)
        atexit.register(state.shutdown)

    return app


if __name__ == "__main__":
    app = create_app()
    # Reloader would start a second scheduler in the child process
    app.run(debug=True, use_reloader=False)
