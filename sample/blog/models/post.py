from datetime import datetime

from model_loader import Definition


class Post(Definition):
    global_id = "posts"
    schema = {
        "title": str,
        "body": str,
        "author_id": str,
        "published_at": datetime,
    }

    def initialize(self, loader, model, *args):
        model.belongs_to(loader.models["users"], "author", left_key="author_id")
        model.has_and_belongs_to_many(loader.models["tags"], "tags")


definition = Post
