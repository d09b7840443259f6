"""Models for the metadata api response.

only the parts we actually read are modelled - extra keys the server sends
are ignored. lookups raise KeyError like the rest of the code base.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class MetaMember(BaseModel):
    """A measure or dimension as described by meta()."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str  # fully qualified, Cube.member
    title: str | None = None
    short_title: str | None = Field(default=None, alias="shortTitle")
    type: str = "string"
    drill_members: list[str] = Field(default_factory=list, alias="drillMembers")
    granularities: list[str] | None = None

    @field_validator("granularities", mode="before")
    @classmethod
    def granularity_names(cls, value: Any) -> Any:
        # newer servers send [{name, title, interval}], older ones plain strings
        if isinstance(value, list):
            return [g["name"] if isinstance(g, dict) else g for g in value]
        return value

    @property
    def label(self) -> str:
        return self.title or self.short_title or self.name.split(".")[-1]


class MetaHierarchy(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str
    title: str | None = None
    levels: list[str] = Field(default_factory=list)  # coarse to fine


class MetaCube(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str
    title: str | None = None
    type: str = "cube"
    measures: list[MetaMember] = Field(default_factory=list)
    dimensions: list[MetaMember] = Field(default_factory=list)
    hierarchies: list[MetaHierarchy] = Field(default_factory=list)


class CubeMeta(BaseModel):
    """Root of the metadata response."""

    model_config = ConfigDict(extra="ignore")

    cubes: list[MetaCube] = Field(default_factory=list)

    def get_cube(self, name: str) -> MetaCube:
        for cube in self.cubes:
            if cube.name == name:
                return cube
        raise KeyError(f"Unknown cube: {name}")

    def find_measure(self, name: str) -> MetaMember | None:
        for cube in self.cubes:
            for measure in cube.measures:
                if measure.name == name:
                    return measure
        return None

    def find_dimension(self, name: str) -> MetaMember | None:
        for cube in self.cubes:
            for dimension in cube.dimensions:
                if dimension.name == name:
                    return dimension
        return None

    def has_cube(self, name: str) -> bool:
        return any(cube.name == name for cube in self.cubes)

    def is_time_dimension(self, name: str) -> bool:
        dimension = self.find_dimension(name)
        return dimension is not None and dimension.type == "time"

    def dimension_label(self, name: str) -> str:
        dimension = self.find_dimension(name)
        if dimension is not None:
            return dimension.label
        return name.split(".")[-1]

    def find_hierarchy_for_dimension(self, name: str) -> tuple[MetaHierarchy, int] | None:
        """Find the hierarchy containing a dimension and its level index.

        only looks in the dimension's own cube (the prefix before the dot).
        """
        cube_name = name.split(".")[0]
        for cube in self.cubes:
            if cube.name != cube_name:
                continue
            for hierarchy in cube.hierarchies:
                if name in hierarchy.levels:
                    return hierarchy, hierarchy.levels.index(name)
        return None
