from sqlalchemy import String, Text, orm
from sqlalchemy.orm import mapped_column

from typing_extensions import Annotated

str50 = Annotated[str, 50]
str255 = Annotated[str, 255]
str512 = Annotated[str, 512]
strtext = Annotated[str, "text"]
guidpk = Annotated[str, mapped_column(String(26), primary_key=True)]


class Base(orm.DeclarativeBase):
    type_annotation_map = {
        str50: String(50),
        str255: String(255),
        str512: String(512),
        strtext: Text(),
        guidpk: String(26),
    }
