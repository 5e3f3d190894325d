from __future__ import annotations

from agent_market.config import MarketPolicy
from agent_market.errors import Conflict, Forbidden, InvalidInput, InvalidState, NotFound
from agent_market.logging_config import get_logger
from agent_market.notifications import NotificationSink, NullSink, dispatch, make_notification
from agent_market.reputation import ReputationLedger
from agent_market.sanitize import clean_optional_text, require_int
from agent_market.schemas import (
    EventType,
    PendingReview,
    ReputationEventType,
    Review,
    ReviewType,
    TaskStatus,
    new_id,
)
from agent_market.state import agent_key, task_key
from agent_market.store import LedgerStore

logger = get_logger(__name__)


def review_event_for(rating: int) -> ReputationEventType | None:
    if rating == 5:
        return ReputationEventType.EXCELLENT_REVIEW
    if rating == 4:
        return ReputationEventType.GOOD_REVIEW
    if rating <= 2:
        return ReputationEventType.POOR_REVIEW
    return None


class ReviewBook:
    """Post-completion ratings between the two parties of a task."""

    def __init__(
        self,
        store: LedgerStore,
        reputation: ReputationLedger,
        *,
        policy: MarketPolicy | None = None,
        sink: NotificationSink | None = None,
    ) -> None:
        self._store = store
        self._reputation = reputation
        self._policy = policy or MarketPolicy()
        self._sink: NotificationSink = sink or NullSink()

    def submit_review(
        self,
        agent_id: str,
        task_id: str,
        rating: int,
        comment: str | None = None,
    ) -> Review:
        rating = require_int(rating, field="rating", minimum=1)
        if rating > 5:
            raise InvalidInput("rating must be between 1 and 5", field="rating", value=rating)
        comment = clean_optional_text(comment, field="comment", max_len=self._policy.max_reason_len)

        seen = self._store.task(task_id)
        if seen is None:
            raise NotFound("task not found", task_id=task_id)
        if seen.status != TaskStatus.COMPLETED or seen.worker_id is None:
            raise InvalidState("can only review completed tasks", task_id=task_id, status=seen.status.value)
        if agent_id == seen.requester_id:
            reviewee_id, review_type = seen.worker_id, ReviewType.AS_WORKER
        elif agent_id == seen.worker_id:
            reviewee_id, review_type = seen.requester_id, ReviewType.AS_REQUESTER
        else:
            raise Forbidden("you are not involved in this task", task_id=task_id)

        keys = (task_key(task_id), agent_key(agent_id), agent_key(reviewee_id))
        with self._store.unit_of_work(EventType.REVIEW_SUBMITTED, *keys) as uow:
            task = uow.task(task_id)
            assert task is not None
            if task.status != TaskStatus.COMPLETED:
                raise InvalidState("can only review completed tasks", task_id=task_id, status=task.status.value)
            for existing in uow.rows("reviews", task_id):
                if isinstance(existing, Review) and existing.reviewer_id == agent_id:
                    raise Conflict("you have already reviewed this task", task_id=task_id)

            review = Review(
                id=new_id("rev"),
                task_id=task_id,
                reviewer_id=agent_id,
                reviewee_id=reviewee_id,
                rating=rating,
                comment=comment,
                review_type=review_type,
            )
            uow.append("reviews", review)

            reviewer = uow.agent(agent_id)
            assert reviewer is not None
            reviewer.reviews_given += 1
            uow.put_agent(reviewer)
            if rating >= 4:
                reviewee = uow.agent(reviewee_id)
                assert reviewee is not None
                reviewee.positive_reviews += 1
                uow.put_agent(reviewee)

            event_type = review_event_for(rating)
            if event_type is not None:
                self._reputation.apply_event(
                    uow,
                    reviewee_id,
                    event_type,
                    related_task_id=task_id,
                    related_agent_id=agent_id,
                )
            self._reputation.award_badges(uow, agent_id)

            uow.notify(
                make_notification(
                    reviewee_id,
                    "review",
                    f"New {rating}-Star Review",
                    f'{reviewer.name} left you a {rating}-star review for "{task.title}"',
                    task_id=task_id,
                    rating=rating,
                    reviewer_id=agent_id,
                )
            )

        logger.info(
            "review_submitted",
            task_id=task_id,
            reviewer_id=agent_id,
            reviewee_id=reviewee_id,
            rating=rating,
        )
        dispatch(self._sink, uow.notifications)
        return review

    def reviews_for(self, agent_id: str, review_type: ReviewType | str | None = None) -> list[Review]:
        if self._store.agent(agent_id) is None:
            raise NotFound("agent not found", agent_id=agent_id)
        if review_type is not None:
            try:
                review_type = ReviewType(review_type)
            except ValueError as exc:
                raise InvalidInput("unknown review type", review_type=str(review_type)) from exc
        reviews = [
            r
            for r in self._store.rows("reviews")
            if isinstance(r, Review)
            and r.reviewee_id == agent_id
            and (review_type is None or r.review_type == review_type)
        ]
        reviews.reverse()
        return reviews

    def pending_reviews(self, agent_id: str) -> list[PendingReview]:
        if self._store.agent(agent_id) is None:
            raise NotFound("agent not found", agent_id=agent_id)
        pending: list[PendingReview] = []
        for task in self._store.tasks():
            if task.status != TaskStatus.COMPLETED or not task.is_party(agent_id):
                continue
            reviewed = any(
                isinstance(r, Review) and r.reviewer_id == agent_id
                for r in self._store.rows("reviews", task.id)
            )
            if reviewed:
                continue
            as_requester = task.requester_id == agent_id
            reviewee_id = task.worker_id if as_requester else task.requester_id
            assert reviewee_id is not None
            pending.append(
                PendingReview(
                    task_id=task.id,
                    task_title=task.title,
                    reviewee_id=reviewee_id,
                    review_type=ReviewType.AS_WORKER if as_requester else ReviewType.AS_REQUESTER,
                    completed_at=task.completed_at,
                )
            )
        pending.sort(key=lambda p: (p.completed_at is not None, p.completed_at), reverse=True)
        return pending
