from flask_sqlalchemy import SQLAlchemy
from datetime import datetime

db = SQLAlchemy()

class Event(db.Model):
    """One gate decision: an answered lookup, a denial, or an internal error."""
    id = db.Column(db.Integer, primary_key=True)
    kind = db.Column(db.String(50), index=True)
    route = db.Column(db.String(64))
    ip = db.Column(db.String(64))
    key_owner = db.Column(db.String(255))
    status = db.Column(db.Integer)
    details = db.Column(db.JSON)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    def as_dict(self):
        return {
            "id": self.id,
            "kind": self.kind,
            "route": self.route,
            "ip": self.ip,
            "key_owner": self.key_owner,
            "status": self.status,
            "details": self.details,
            "created_at": self.created_at.isoformat() + "Z",
        }
