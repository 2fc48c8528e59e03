from typing import Tuple, Union
from pydantic import BaseModel, NonNegativeFloat, NonNegativeInt, PositiveInt, constr

class Product(BaseModel):
    id: PositiveInt
    name: constr(min_length=1)
    price: Union[NonNegativeInt, NonNegativeFloat]  # 100 reste 100 en JSON, pas 100.0

    class Config:
        frozen = True

# Catalogue fixe, jamais modifié
products_db: Tuple[Product, ...] = (
    Product(id=1, name="Product A", price=100),
    Product(id=2, name="Product B", price=150),
    Product(id=3, name="Product C", price=200),
)
