"""Tests for namespaced cache key construction.

Covers:
- create_cache_key layout with and without subtype/id
- purity over randomised inputs
- entity helpers and the token/blacklist/session key families
"""

import random
import string

from tokenkeeper.storage.keys import (
    blacklist_key,
    blog_keys,
    create_cache_key,
    session_key,
    token_key,
    user_keys,
)


def _word(rng: random.Random, max_len: int = 12) -> str:
    return "".join(rng.choice(string.ascii_letters + string.digits + "-_") for _ in range(rng.randint(1, max_len)))


class TestCreateCacheKey:
    def test_service_and_entity_only(self):
        assert create_cache_key("api", "blog") == "api:blog"

    def test_with_id(self):
        assert create_cache_key("api", "blog", 42) == "api:blog:42"

    def test_with_subtype_and_id(self):
        assert create_cache_key("api", "user", "u1", "auth") == "api:user:auth:u1"

    def test_zero_id_is_kept(self):
        assert create_cache_key("api", "blog", 0) == "api:blog:0"

    def test_pure_over_random_inputs(self):
        """Same inputs always give the same key; inputs appear in order."""
        rng = random.Random(1234)
        for _ in range(500):
            service = _word(rng)
            entity = _word(rng)
            id_value = rng.choice([None, _word(rng), rng.randint(0, 10_000)])
            subtype = rng.choice([None, _word(rng)])
            first = create_cache_key(service, entity, id_value, subtype)
            second = create_cache_key(service, entity, id_value, subtype)
            assert first == second
            expected = [service, entity]
            if subtype:
                expected.append(subtype)
            if id_value is not None:
                expected.append(str(id_value))
            assert first == ":".join(expected)


class TestEntityKeys:
    def test_collection_defaults_to_all(self):
        assert blog_keys.collection("api") == "api:blog:all"

    def test_collection_with_filter(self):
        assert blog_keys.collection("api", "published") == "api:blog:published"

    def test_single(self):
        assert blog_keys.single("api", "7") == "api:blog:7"

    def test_user_auth(self):
        assert user_keys.auth("api", "u1") == "api:user:auth:u1"


class TestLifecycleKeys:
    def test_token_key(self):
        assert token_key("user-123") == "token:user-123"

    def test_blacklist_key(self):
        assert blacklist_key("abc") == "blacklist:abc"

    def test_session_key(self):
        assert session_key("s1") == "sess:s1"
