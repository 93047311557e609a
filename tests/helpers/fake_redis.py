from redis.exceptions import WatchError


class FakeRedis:
    """
    Just enough of redis.asyncio.Redis for RedisNotificationStore:
    hashes, sets, pipelines (queued), and WATCH/MULTI with a version check.
    """
    def __init__(self):
        self.hashes = {}
        self.sets = {}
        self.versions = {}
        self.on_execute = None  # hook run inside the next pipelines before EXEC

    def _touch(self, key):
        self.versions[key] = self.versions.get(key, 0) + 1

    # immediate commands
    async def hgetall(self, key):
        return dict(self.hashes.get(key, {}))

    async def hget(self, key, field):
        return self.hashes.get(key, {}).get(field)

    async def smembers(self, key):
        return set(self.sets.get(key, set()))

    # sync helpers used by queued pipelines
    def _hset(self, key, mapping):
        self.hashes.setdefault(key, {}).update(mapping)
        self._touch(key)
        return len(mapping)

    def _sadd(self, key, *members):
        self.sets.setdefault(key, set()).update(members)
        return len(members)

    def _srem(self, key, *members):
        s = self.sets.get(key, set())
        for m in members:
            s.discard(m)
        return len(members)

    def _delete(self, *keys):
        for k in keys:
            self.hashes.pop(k, None)
            self.sets.pop(k, None)
            self._touch(k)
        return len(keys)

    def _hgetall(self, key):
        return dict(self.hashes.get(key, {}))

    def pipeline(self, transaction=True):
        p = FakePipeline(self)
        p.before_execute = self.on_execute
        return p

    def external_edit(self, key, mapping):
        """Simulate another client writing between WATCH and EXEC."""
        self._hset(key, mapping)


class FakePipeline:
    def __init__(self, r):
        self.r = r
        self.ops = []
        self.watched = {}
        self.before_execute = None  # hook to simulate a concurrent writer

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.ops.clear()
        self.watched.clear()

    async def watch(self, *keys):
        for k in keys:
            self.watched[k] = self.r.versions.get(k, 0)

    async def hget(self, key, field):
        return await self.r.hget(key, field)

    def multi(self):
        pass

    def hset(self, key, mapping=None):
        self.ops.append(("hset", key, dict(mapping or {})))
        return self

    def hgetall(self, key):
        self.ops.append(("hgetall", key))
        return self

    def sadd(self, key, *members):
        self.ops.append(("sadd", key, members))
        return self

    def srem(self, key, *members):
        self.ops.append(("srem", key, members))
        return self

    def delete(self, *keys):
        self.ops.append(("delete", keys))
        return self

    async def execute(self):
        if self.before_execute:
            self.before_execute()
        for k, v in self.watched.items():
            if self.r.versions.get(k, 0) != v:
                self.ops.clear()
                raise WatchError("watched key changed")
        out = []
        for op in self.ops:
            name = op[0]
            if name == "hset":
                out.append(self.r._hset(op[1], op[2]))
            elif name == "hgetall":
                out.append(self.r._hgetall(op[1]))
            elif name == "sadd":
                out.append(self.r._sadd(op[1], *op[2]))
            elif name == "srem":
                out.append(self.r._srem(op[1], *op[2]))
            elif name == "delete":
                out.append(self.r._delete(*op[1]))
        self.ops.clear()
        return out
