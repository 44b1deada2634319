from pydantic import BaseModel, ConfigDict, field_validator

COORDINATE_DECIMALS = 7


def round_coordinate(value: float) -> float:
    return round(value, COORDINATE_DECIMALS)


class PointDetails(BaseModel):
    model_config = ConfigDict(frozen=True)

    city: str
    location: str
    station_id: str
    teryt: str


class PointPermission(BaseModel):
    model_config = ConfigDict(frozen=True)

    operator_name: str
    decision_number: str
    decision_type: str
    expiry_date: int
    technology: str

    @property
    def key(self) -> tuple[str, str]:
        return (self.technology, self.operator_name)


class Point(BaseModel):
    longitude: float
    latitude: float
    details: PointDetails
    permissions: list[PointPermission]

    @field_validator("longitude", "latitude")
    @classmethod
    def round_to_centimetres(cls, value: float) -> float:
        return round_coordinate(value)

    @property
    def station_id(self) -> str:
        return self.details.station_id

    def merged_with(self, other: "Point") -> "Point":
        """Return a copy carrying ``other``'s permissions that are not already present.

        Coordinates and details of ``self`` win.
        """
        known = {permission.key for permission in self.permissions}
        extra = []
        for permission in other.permissions:
            if permission.key in known:
                continue
            known.add(permission.key)
            extra.append(permission)
        if not extra:
            return self
        return self.model_copy(update={"permissions": [*self.permissions, *extra]})


class PointFilter(BaseModel):
    technologies: set[str] | None = None
    operator_names: set[str] | None = None

    @property
    def is_empty(self) -> bool:
        return not self.technologies and not self.operator_names


class Location(BaseModel):
    latitude: float
    longitude: float
