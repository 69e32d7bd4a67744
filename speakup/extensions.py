from flask_login import LoginManager
from flask_socketio import SocketIO

# Bound to the app in create_app(); the Redis message queue is attached there
# when REDIS_URL is configured so several workers share one channel space.
socketio = SocketIO(async_mode='threading')

login_manager = LoginManager()
