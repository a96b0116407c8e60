def follower_count(user_id: str) -> str:
    return f"follower_count:{user_id}"


def following_count(user_id: str) -> str:
    return f"following_count:{user_id}"


def is_following(follower_id: str, following_id: str) -> str:
    return f"is_following:{follower_id}:{following_id}"


def post_likes_count(post_id: str) -> str:
    return f"post_likes_count:{post_id}"


def has_liked(user_id: str, post_id: str) -> str:
    return f"has_liked:{user_id}:{post_id}"


def messages(conversation_id: str) -> str:
    return f"messages:{conversation_id}"


def conversation(conversation_id: str) -> str:
    return f"conversation:{conversation_id}"


def conversations(user_id: str) -> str:
    return f"conversations:{user_id}"


def unread_count(user_id: str) -> str:
    return f"unread_count:{user_id}"


def follow_edge_keys(follower_id: str, following_id: str) -> list[str]:
    # Every read a follow/unfollow can stale
    return [
        follower_count(following_id),
        following_count(follower_id),
        is_following(follower_id, following_id),
    ]


def like_keys(user_id: str, post_id: str) -> list[str]:
    return [post_likes_count(post_id), has_liked(user_id, post_id)]
