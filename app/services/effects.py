import logging
from sqlalchemy.orm import Session
from app.models import GatedAction, Post
from app.services.invoice_gate import action_target

logger = logging.getLogger(__name__)


def upvote_post(db: Session, action: GatedAction):
    """Suma un voto al post de la acción (post-<id>). No hace commit: lo hace el gate."""
    post_id = action_target(action.action_id)
    updated = (
        db.query(Post)
          .filter(Post.id == post_id)
          .update({Post.votes: Post.votes + 1}, synchronize_session=False)
    )
    if not updated:
        raise LookupError(f"Post {post_id} no existe")
    logger.info(f"✔ Upvote aplicado al post {post_id}")
