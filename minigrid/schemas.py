from typing import List

from pydantic import BaseModel


class PriceLevelsRequest(BaseModel):
    levels: List[float] = []
