from action_monitor import create_app
from action_monitor.models import db

app = create_app()

if __name__ == "__main__":
    # Local development convenience; deployed environments run the migration script
    with app.app_context():
        db.create_all()
    app.run(debug=True, port=8000)
