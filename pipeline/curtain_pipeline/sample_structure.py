# File: pipeline/curtain_pipeline/sample_structure.py
# Derives the condition/replicate structure of a dataset from its sample column names.

from typing import Dict, List, Tuple

from pipeline.curtain_pipeline.curtain_models import CurtainSettings


def split_sample_name(sample: str) -> Tuple[str, str]:
    """
    Splits a sample column name into (condition, replicate).

    "Treated.Day1.2" -> ("Treated.Day1", "2"); a name without "." is its own condition.
    """
    parts = [part for part in sample.split(".") if part]
    if len(parts) > 1:
        return ".".join(parts[:-1]), parts[-1]
    return sample, parts[-1] if parts else ""


def build_settings_from_samples(settings: CurtainSettings, samples: List[str]) -> CurtainSettings:
    """
    Returns a copy of the settings with sample map, colors and ordering derived from
    the sample names.

    Conditions already assigned in the existing sample map win over derived ones. New
    conditions take the next palette color (cycling); existing colors are kept. Order
    lists keep existing entries in place, append new ones and drop samples and
    conditions that are no longer present.
    """
    palette = settings.default_color_list
    color_map = dict(settings.color_map)
    sample_order: Dict[str, List[str]] = {key: list(value) for key, value in settings.sample_order.items()}
    sample_visible = dict(settings.sample_visible)

    built_sample_map: Dict[str, Dict[str, str]] = {}
    conditions: List[str] = []
    color_position = 0

    for sample in samples:
        derived_condition, replicate = split_sample_name(sample)
        existing = settings.sample_map.get(sample) or {}
        condition = existing.get("condition") or derived_condition

        if condition not in conditions:
            conditions.append(condition)
            if condition not in color_map and palette:
                if color_position >= len(palette):
                    color_position = 0
                color_map[condition] = palette[color_position]
                color_position += 1

        ordered = sample_order.setdefault(condition, [])
        if sample not in ordered:
            ordered.append(sample)

        sample_visible.setdefault(sample, True)
        built_sample_map[sample] = {"replicate": replicate, "condition": condition, "name": sample}

    sample_set = set(samples)
    if settings.sample_map:
        merged = dict(settings.sample_map)
        for key, value in built_sample_map.items():
            merged.setdefault(key, value)
        final_sample_map = {key: value for key, value in merged.items() if key in sample_set}
    else:
        final_sample_map = built_sample_map

    if settings.condition_order:
        kept = [condition for condition in settings.condition_order if condition in conditions]
        final_condition_order = kept + [condition for condition in conditions if condition not in kept]
    else:
        final_condition_order = conditions

    final_sample_order = {
        condition: [sample for sample in ordered if sample in sample_set]
        for condition, ordered in sample_order.items()
        if condition in conditions
    }
    final_sample_visible = {key: value for key, value in sample_visible.items() if key in sample_set}

    return settings.model_copy(update={
        "color_map": color_map,
        "sample_map": final_sample_map,
        "sample_order": final_sample_order,
        "sample_visible": final_sample_visible,
        "condition_order": final_condition_order,
    })
