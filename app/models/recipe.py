from tortoise import fields, models
import uuid


class Recipe(models.Model):
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    restaurant = fields.ForeignKeyField("models.Restaurant", related_name="recipes")
    menu_item = fields.ForeignKeyField("models.MenuItem", related_name="recipes")
    name = fields.CharField(max_length=255)
    version = fields.IntField(default=1)
    serving_size = fields.DecimalField(max_digits=10, decimal_places=3, default=1)  # Yield
    is_active = fields.BooleanField(default=True)
    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "recipes"
        indexes = [
            ("restaurant_id", "menu_item_id", "is_active"),  # Active recipe lookup
        ]


class RecipeIngredient(models.Model):
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    recipe = fields.ForeignKeyField("models.Recipe", related_name="ingredients")
    inventory_item = fields.ForeignKeyField("models.InventoryItem", related_name="recipe_usages")
    quantity = fields.DecimalField(max_digits=14, decimal_places=3)  # Per serving
    unit = fields.CharField(max_length=16)
    position = fields.IntField(default=0)

    class Meta:
        table = "recipe_ingredients"
        ordering = ["position"]
