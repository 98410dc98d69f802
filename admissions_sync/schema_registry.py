"""Canonical table schemas, one immutable ``SchemaVersion`` per (table, version).

Synonyms list the raw headings accepted for a column across export vintages
(including the Chinese spreadsheet headings) and the legacy column names still
present in the live store during a transition window.
"""

import threading
from datetime import date

from admissions_sync.schemas import ColumnDescriptor, SchemaVersion


class SchemaRegistry:
    def __init__(self) -> None:
        self._versions: dict[str, dict[int, SchemaVersion]] = {}
        self._lock = threading.Lock()

    def publish(self, version: SchemaVersion) -> SchemaVersion:
        with self._lock:
            table_versions = self._versions.setdefault(version.table, {})
            existing = table_versions.get(version.version)
            if existing is not None:
                if existing != version:
                    raise ValueError(
                        f"schema version {version.version} of '{version.table}' is already published"
                    )
                return existing
            table_versions[version.version] = version
            return version

    def get(self, table: str, version: int) -> SchemaVersion:
        try:
            return self._versions[table][version]
        except KeyError:
            raise KeyError(f"no schema version {version} published for '{table}'") from None

    def latest(self, table: str) -> SchemaVersion:
        table_versions = self._versions.get(table)
        if not table_versions:
            raise KeyError(f"no schema published for '{table}'")
        return table_versions[max(table_versions)]

    def resolve(self, table: str, version_hint: int | None) -> SchemaVersion:
        if version_hint is None:
            return self.latest(table)
        return self.get(table, version_hint)

    def tables(self) -> list[str]:
        return sorted(self._versions)


def _col(name: str, semantic_type: str, nullable: bool = True, *synonyms: str) -> ColumnDescriptor:
    return ColumnDescriptor(name=name, semantic_type=semantic_type, nullable=nullable, synonyms=tuple(synonyms))


_PARTITION_COLUMNS = (
    _col("province", "string", False, "source_province", "生源地"),
    _col("year", "integer", False, "年份"),
)

ENROLLMENT_PLANS_V1 = SchemaVersion(
    table="enrollment_plans",
    version=1,
    columns=_PARTITION_COLUMNS
    + (
        _col("college_code", "string", True, "院校代码"),
        _col("college_name", "string", False, "院校名称", "学校"),
        _col("major_group_code", "string", True, "college_major_group_code", "院校专业组代码", "专业组代码"),
        _col("major_group_name", "string", True, "专业组名称"),
        _col("major_code", "string", True, "专业代码"),
        _col("major_name", "string", True, "专业名称", "专业"),
        _col("subject_type", "string", True, "科类"),
        _col("admission_batch", "string", True, "batch", "批次"),
        _col("subject_requirements", "string", True, "选科要求"),
        _col("major_remarks", "text", True, "专业备注"),
        _col("plan_count", "integer", True, "计划人数"),
        _col("study_years", "integer", True, "学制"),
        _col("tuition", "decimal", True, "学费"),
    ),
)

_SCORE_COMMON = _PARTITION_COLUMNS + (
    _col("college_name", "string", False, "学校", "院校名称"),
    _col("major_code", "string", True, "专业代码"),
    _col("major_name", "string", True, "专业", "专业名称"),
    _col("subject_type", "string", True, "科类"),
    _col("subject_requirements", "string", True, "选科"),
    _col("min_score", "integer", True, "最低分"),
    _col("min_rank", "integer", True, "最低位次"),
    _col("avg_score", "integer", True, "平均分"),
    _col("max_score", "integer", True, "最高分"),
    _col("plan_count", "integer", True, "计划人数"),
)

CLEANED_ADMISSION_SCORES_V1 = SchemaVersion(
    table="cleaned_admission_scores",
    version=1,
    columns=_SCORE_COMMON
    + (
        _col("batch", "string", True, "批次"),
        _col("group_code", "string", True, "专业组"),
        _col("group_name", "string", True, "专业组名称"),
    ),
)

CLEANED_ADMISSION_SCORES_V2 = SchemaVersion(
    table="cleaned_admission_scores",
    version=2,
    columns=_SCORE_COMMON
    + (
        _col("admission_batch", "string", False, "batch", "批次"),
        _col("major_group_code", "string", True, "group_code", "专业组"),
        _col("major_group_name", "string", True, "group_name", "专业组名称"),
    ),
    transition_ends=date(2025, 9, 30),
)

COLLEGE_CAMPUS_LIFE_V1 = SchemaVersion(
    table="college_campus_life",
    version=1,
    columns=_PARTITION_COLUMNS
    + (
        _col("college_name", "string", False, "学校", "院校名称"),
        _col("dorm_style", "string", True, "宿舍类型"),
        _col("has_air_conditioner", "boolean", True, "空调"),
        _col("has_independent_bathroom", "boolean", True, "独立卫浴"),
        _col("dorm_score", "decimal", True),
        _col("canteen_price_level", "string", True, "食堂价格"),
        _col("canteen_quality_score", "decimal", True),
        _col("has_subway", "boolean", True, "地铁"),
        _col("transport_score", "decimal", True),
        _col("has_washing_machine", "boolean", True, "洗衣机"),
        _col("campus_wifi_quality", "string", True, "校园网"),
        _col("study_environment_score", "decimal", True),
        _col("answer_count", "integer", True),
    ),
)

_RAW_ANSWER_QUESTIONS = (
    ("q1_dorm_style", "宿舍是上床下桌吗"),
    ("q2_air_conditioner", "教室和宿舍有没有空调"),
    ("q3_bathroom", "有独立卫浴吗"),
    ("q4_self_study", "有早自习、晚自习吗"),
    ("q5_morning_run", "有晨跑吗"),
    ("q8_takeout", "能点外卖吗"),
    ("q9_transport", "学校交通便利吗"),
    ("q10_washing_machine", "宿舍有洗衣机吗"),
    ("q11_campus_wifi", "校园网怎么样"),
    ("q13_canteen_price", "食堂价格贵吗"),
)

COLLEGE_LIFE_RAW_ANSWERS_V1 = SchemaVersion(
    table="college_life_raw_answers",
    version=1,
    columns=_PARTITION_COLUMNS
    + (
        _col("college_name", "string", False, "学校", "院校名称"),
        _col("answer_id", "integer", True, "答卷编号", "序号"),
    )
    + tuple(_col(name, "text", True, heading) for name, heading in _RAW_ANSWER_QUESTIONS)
    + (
        _col("source", "string", True, "来源"),
        _col("submitted_at", "datetime", True, "提交答卷时间"),
        _col("ip_province", "string", True, "IP省份"),
    ),
)

CANONICAL_VERSIONS = (
    ENROLLMENT_PLANS_V1,
    CLEANED_ADMISSION_SCORES_V1,
    CLEANED_ADMISSION_SCORES_V2,
    COLLEGE_CAMPUS_LIFE_V1,
    COLLEGE_LIFE_RAW_ANSWERS_V1,
)


def default_registry() -> SchemaRegistry:
    registry = SchemaRegistry()
    for version in CANONICAL_VERSIONS:
        registry.publish(version)
    return registry
