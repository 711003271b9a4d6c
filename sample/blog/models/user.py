from sqlalchemy import String

from model_loader import Definition


class User(Definition):
    table_name = "users"
    schema = {
        "name": String(120),
        "email": String(255),
    }
    options = {"enforce_missing": True}

    def initialize(self, loader, model, *args):
        model.has_many(loader.models["posts"], "posts", right_key="author_id")


definition = User
