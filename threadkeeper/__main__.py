"""Package entry point for `python -m threadkeeper`."""

from threadkeeper.config.env import DEBUG, FLASK_HOST, FLASK_PORT
from threadkeeper.main import app, socketio, start_background

if __name__ == "__main__":
    start_background()
    socketio.run(app, host=FLASK_HOST, port=FLASK_PORT, debug=DEBUG, allow_unsafe_werkzeug=True)
