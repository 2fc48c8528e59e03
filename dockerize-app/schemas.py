from typing import List, Union
from pydantic import BaseModel

class ProductResponse(BaseModel):
    id: int
    name: str
    price: Union[int, float]

    class Config:
        from_attributes = True

class ProductList(BaseModel):
    products: List[ProductResponse]

class HealthResponse(BaseModel):
    status: str
    service: str
