"""Field computations shared by the storage backends' `merge` implementations."""

from typing import Any, Mapping

from featuregraph.feature import Feature, FeatureType, hierarchy_level_for


def append_provenance(metadata: Mapping[str, Any], provenance: Mapping[str, Any]) -> dict:
    """Append each provenance value to the list stored under the same key."""
    merged = dict(metadata)
    for key, value in provenance.items():
        existing = merged.get(key)
        if existing is None:
            merged[key] = [value]
        elif isinstance(existing, list):
            merged[key] = [*existing, value]
        else:
            merged[key] = [existing, value]
    return merged


def is_ancestor(ancestor_id: str, feature_id: str, parent_ids: Mapping[str, str | None]) -> bool:
    """True when `ancestor_id` is on the parent chain above `feature_id`."""
    seen = {feature_id}
    current = parent_ids.get(feature_id)
    while current is not None and current not in seen:
        if current == ancestor_id:
            return True
        seen.add(current)
        current = parent_ids.get(current)
    return False


def merged_keeper_fields(
    keeper: Feature,
    loser: Feature,
    provenance: Mapping[str, Any],
    parent_ids: Mapping[str, str | None],
) -> dict[str, Any]:
    """Return the field updates for the surviving feature of a merge.

    `parent_ids` maps every feature id to its parent id before the merge. If
    the loser is anywhere above the keeper, the keeper takes over the loser's
    parent, so the loser's children (including the branch the keeper came
    from) can move under the keeper without forming a cycle. A story or task
    left without a parent becomes an epic.
    """
    fields: dict[str, Any] = {"metadata": append_provenance(keeper.metadata, provenance)}
    if is_ancestor(loser.feature_id, keeper.feature_id, parent_ids):
        parent_id = loser.parent_id if loser.parent_id != keeper.feature_id else None
        fields["parent_id"] = parent_id
        if parent_id is None and keeper.feature_type != FeatureType.EPIC:
            fields["feature_type"] = FeatureType.EPIC
            fields["hierarchy_level"] = hierarchy_level_for(FeatureType.EPIC)
    return fields
