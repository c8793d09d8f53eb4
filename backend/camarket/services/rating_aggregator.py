from typing import Iterable, List, Tuple

from camarket.models import RatingSummary
from camarket.services.database import Database, database


class RatingAggregator:
    """Derives provider ratings from review rows on every read.

    Nothing is cached on the provider record: reviews are edited and deleted
    independently, and a stored counter would drift from the rows.
    """

    def __init__(self, database: Database) -> None:
        self.database = database

    def aggregate(self, provider_id: str) -> RatingSummary:
        with self.database.read() as conn:
            row = conn.execute(
                """
                SELECT
                    COUNT(*) AS review_count,
                    AVG(rating) AS average_rating,
                    SUM(CASE WHEN is_verified = 1 THEN 1 ELSE 0 END) AS verified_review_count,
                    AVG(CASE WHEN is_verified = 1 THEN rating END) AS verified_rating
                FROM reviews
                WHERE provider_id = ?
                """,
                (provider_id,),
            ).fetchone()
        return RatingSummary(
            provider_id=provider_id,
            average_rating=round(row["average_rating"] or 0.0, 2),
            review_count=row["review_count"] or 0,
            verified_rating=round(row["verified_rating"] or 0.0, 2),
            verified_review_count=row["verified_review_count"] or 0,
        )

    def rank(self, provider_ids: Iterable[str]) -> List[RatingSummary]:
        summaries = [self.aggregate(provider_id) for provider_id in dict.fromkeys(provider_ids)]
        return sorted(summaries, key=rank_key)


def rank_key(summary: RatingSummary) -> Tuple[int, float, float, int, str]:
    """Verified feedback outranks volume: any verified review beats none."""
    has_verified = summary.verified_review_count > 0
    return (
        0 if has_verified else 1,
        -summary.verified_rating if has_verified else 0.0,
        -summary.average_rating,
        -summary.review_count,
        summary.provider_id,
    )


rating_aggregator = RatingAggregator(database=database)
