from __future__ import annotations

import random
import string
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from senior_trends.services.video_records import VideoRecord

VIDEO_ID_ALPHABET = string.ascii_letters + string.digits + "-_"
VIDEO_ID_LENGTH = 11

# (min, max, weight in percent)
VIEW_RANGES: tuple[tuple[int, int, int], ...] = (
    (10_000, 50_000, 30),
    (50_000, 150_000, 40),
    (150_000, 500_000, 25),
    (500_000, 1_000_000, 5),
)
GROWTH_RANGES: tuple[tuple[float, float, int], ...] = (
    (1.0, 5.0, 40),
    (5.0, 15.0, 35),
    (15.0, 30.0, 20),
    (30.0, 50.0, 5),
)


@dataclass(frozen=True)
class CategoryTemplate:
    category: str
    display_name: str
    titles: tuple[str, ...]
    channels: tuple[str, ...]
    tags: tuple[str, ...]
    description: str


CATEGORY_TEMPLATES: dict[str, CategoryTemplate] = {
    "health": CategoryTemplate(
        category="health",
        display_name="건강 & 운동",
        titles=(
            "60대도 쉽게 따라하는 무릎 건강 운동 5가지",
            "시니어를 위한 혈압 낮추는 생활습관",
            "중년 이후 반드시 알아야 할 건강 관리법",
            "실버 요가로 관절 건강 지키기",
            "70대도 할 수 있는 홈트레이닝",
            "치매 예방을 위한 두뇌 운동법",
        ),
        channels=("실버헬스TV", "건강한노년", "시니어웰빙", "헬시에이징", "건강백세"),
        tags=("시니어건강", "실버운동", "노인체조", "건강관리", "관절건강"),
        description="시니어를 위한 건강 관리 정보와 운동법을 제공합니다.",
    ),
    "tech": CategoryTemplate(
        category="tech",
        display_name="시니어 테크",
        titles=(
            "시니어를 위한 카카오톡 완전정복 가이드",
            "스마트폰 기초부터 고급기능까지",
            "온라인 쇼핑 안전하게 하는 방법",
            "시니어를 위한 인터넷 뱅킹 완전 가이드",
            "화상통화로 손자 손녀와 소통하기",
        ),
        channels=("디지털시니어", "스마트실버", "시니어IT교육", "실버테크", "디지털할머니"),
        tags=("시니어IT", "스마트폰", "디지털교육", "온라인", "앱사용법"),
        description="시니어도 쉽게 따라할 수 있는 디지털 기기 활용법을 알려드립니다.",
    ),
    "cooking": CategoryTemplate(
        category="cooking",
        display_name="요리 & 레시피",
        titles=(
            "50대 이후 건강한 식단 한 주 레시피",
            "당뇨 환자를 위한 맛있는 저당 요리",
            "소화가 잘 되는 시니어 반찬 10가지",
            "면역력 강화 시니어 보양식",
            "간편하게 만드는 영양 죽 레시피",
        ),
        channels=("건강한실버요리", "시니어쿠킹", "웰빙레시피", "실버키친", "시니어셰프"),
        tags=("시니어요리", "건강식단", "간편요리", "영양관리", "레시피"),
        description="시니어 건강을 생각한 간편하고 맛있는 요리법을 소개합니다.",
    ),
    "travel": CategoryTemplate(
        category="travel",
        display_name="여행",
        titles=(
            "시니어 추천 국내 여행지 BEST 10",
            "60대 부모님과 함께하는 제주도 3박4일",
            "기차 여행으로 즐기는 전국 맛집 투어",
            "효도 여행 베스트 코스 추천",
            "걸으면서 즐기는 시니어 도보여행",
        ),
        channels=("시니어트래블", "실버여행가", "중년여행클럽", "효도여행TV", "시니어버스투어"),
        tags=("시니어여행", "국내여행", "해외여행", "패키지여행", "효도여행"),
        description="시니어가 편하게 즐길 수 있는 여행 정보를 전합니다.",
    ),
    "hobby": CategoryTemplate(
        category="hobby",
        display_name="취미 & 여가",
        titles=(
            "60대에 시작하는 서예, 마음이 편해지는 시간",
            "정원 가꾸기로 즐기는 시니어 라이프",
            "뜨개질로 만드는 손자 손녀 선물",
            "실버 댄스로 건강하고 즐겁게",
            "노년기 새로운 취미 찾기",
        ),
        channels=("실버문화센터", "시니어취미방", "중년의품격", "실버아트", "취미생활TV"),
        tags=("시니어취미", "문화활동", "여가생활", "평생교육", "동호회"),
        description="노년을 즐겁게 만드는 취미와 여가 활동을 소개합니다.",
    ),
    "life": CategoryTemplate(
        category="life",
        display_name="생활 정보",
        titles=(
            "시니어를 위한 연금 수령 완전 가이드",
            "은퇴 후 재정 관리 노하우",
            "실버타운 선택 시 체크포인트",
            "노후 준비 체크리스트",
            "노인 돌봄 서비스 이용 가이드",
        ),
        channels=("실버라이프코치", "시니어정보방", "노후설계전문가", "시니어라이프", "은퇴설계TV"),
        tags=("시니어라이프", "노후준비", "은퇴설계", "연금", "실버타운"),
        description="은퇴 이후 생활에 꼭 필요한 정보를 정리합니다.",
    ),
}


class SyntheticVideoGenerator:
    """
    Stand-in records for scans that cannot reach the API.

    Every record is flagged `is_simulated`. Pass a seeded `random.Random` for
    reproducible output.
    """

    def __init__(self, rng: random.Random | None = None) -> None:
        self._rng = rng or random.Random()

    def generate(
        self,
        count: int,
        *,
        category: str = "all",
        now: datetime | None = None,
        source_keyword: str | None = None,
    ) -> list[VideoRecord]:
        if count <= 0:
            return []
        current_time = now or datetime.now(UTC)
        templates = self._templates_for(category)
        return [
            self._generate_one(
                self._rng.choice(templates),
                now=current_time,
                source_keyword=source_keyword,
            )
            for _ in range(count)
        ]

    def _templates_for(self, category: str) -> list[CategoryTemplate]:
        normalized = category.strip().lower()
        if normalized in CATEGORY_TEMPLATES:
            return [CATEGORY_TEMPLATES[normalized]]
        return list(CATEGORY_TEMPLATES.values())

    def _generate_one(
        self,
        template: CategoryTemplate,
        *,
        now: datetime,
        source_keyword: str | None,
    ) -> VideoRecord:
        rng = self._rng
        video_id = "".join(rng.choice(VIDEO_ID_ALPHABET) for _ in range(VIDEO_ID_LENGTH))
        views = int(_weighted_uniform(rng, VIEW_RANGES))
        likes = int(views * rng.uniform(0.02, 0.10))
        comments = int(views * rng.uniform(0.001, 0.004))
        duration_seconds = rng.randint(3, 27) * 60 + rng.randint(0, 59)
        published_at = now - timedelta(hours=rng.randint(1, 72))

        return VideoRecord(
            video_id=video_id,
            title=rng.choice(template.titles),
            channel_id=f"simulated-{template.category}",
            channel_title=rng.choice(template.channels),
            published_at=published_at,
            duration_seconds=duration_seconds,
            view_count=views,
            like_count=likes,
            comment_count=comments,
            description=template.description,
            tags=template.tags,
            source_keyword=source_keyword,
            category=template.category,
            is_simulated=True,
            growth_rate=round(_weighted_uniform(rng, GROWTH_RANGES), 1),
        )


def _weighted_uniform(
    rng: random.Random,
    ranges: tuple[tuple[float, float, int], ...] | tuple[tuple[int, int, int], ...],
) -> float:
    low, high, _ = rng.choices(ranges, weights=[weight for _, _, weight in ranges])[0]
    return rng.uniform(low, high)
