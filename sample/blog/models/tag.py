from model_loader import Definition


class Tag(Definition):
    table_name = "tags"
    schema = {"label": str}


definition = Tag
