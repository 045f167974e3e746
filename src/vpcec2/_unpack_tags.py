from typing import Iterable, Mapping, Tuple, Union

Tags = Tuple[Tuple[str, str], ...]


def unpack_tags(tags: str | None) -> Tags:
    tags_unpacked: list[Tuple[str, str]] = []
    if tags:
        try:
            tags_list = tags.split(";")
            for tag in tags_list:
                key, value = tag.split("=")
                tags_unpacked.append((key, value))
        except ValueError:
            raise ValueError(
                "Tags must be in the format 'key1=value1;key2=value2', "
                f"but instead got {tags}"
            )
    return tuple(tags_unpacked)


def normalize_tags(
    tags: Union[Mapping[str, str], Iterable[Tuple[str, str]], None],
) -> Tags:
    if tags is None:
        return ()
    if isinstance(tags, Mapping):
        return tuple((str(k), str(v)) for k, v in tags.items())
    return tuple((str(k), str(v)) for k, v in tags)


def merge_tags(*tag_sets: Tags) -> Tags:
    """Merge tag sets left to right; later keys win but keep their first position."""
    merged: dict[str, str] = {}
    for tag_set in tag_sets:
        for key, value in tag_set:
            merged[key] = value
    return tuple(merged.items())
