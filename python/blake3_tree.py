import logging

logger = logging.getLogger(__name__)

# the BLAKE3 initialization constants
IV = [
    0x6A09E667,
    0xBB67AE85,
    0x3C6EF372,
    0xA54FF53A,
    0x510E527F,
    0x9B05688C,
    0x1F83D9AB,
    0x5BE0CD19,
]

# the BLAKE3 message schedule
MSG_SCHEDULE = [
    [0, 1, 2, 3, 4, 5, 6, 7, 8, 9, 10, 11, 12, 13, 14, 15],
    [2, 6, 3, 10, 7, 0, 4, 13, 1, 11, 12, 5, 9, 14, 15, 8],
    [3, 4, 10, 12, 13, 2, 7, 14, 6, 5, 9, 0, 11, 15, 8, 1],
    [10, 7, 12, 9, 14, 3, 13, 15, 4, 0, 11, 2, 5, 8, 1, 6],
    [12, 13, 9, 11, 15, 10, 14, 8, 7, 2, 5, 3, 0, 1, 6, 4],
    [9, 14, 11, 5, 8, 12, 15, 1, 13, 3, 0, 10, 2, 6, 4, 7],
    [11, 15, 5, 0, 1, 9, 8, 6, 14, 10, 2, 12, 3, 4, 7, 13],
]

BLOCK_LEN = 64
CHUNK_LEN = 1024
KEY_LEN = 32
OUT_LEN = 32
WORD_BITS = 32
WORD_BYTES = 4
WORD_MAX = 2**WORD_BITS - 1

# domain flags
CHUNK_START = 1 << 0
CHUNK_END = 1 << 1
PARENT = 1 << 2
ROOT = 1 << 3
KEYED_HASH = 1 << 4


class InvalidKeyLength(ValueError):
    pass


class StateError(RuntimeError):
    pass


class CapacityExceeded(AssertionError):
    """A cargo was offered more bytes than it has room for.

    This is an internal logic error, never a caller mistake.
    """


def wrapping_add(a: int, b: int) -> int:
    return (a + b) & WORD_MAX


def rotate_right(x: int, n: int) -> int:
    return (x >> n | x << (WORD_BITS - n)) & WORD_MAX


# The BLAKE3 G function, a ChaCha-style quarter-round. One round calls it
# eight times: four columns, then four diagonals.
def g(state, a, b, c, d, x, y):
    state[a] = wrapping_add(state[a], wrapping_add(state[b], x))
    state[d] = rotate_right(state[d] ^ state[a], 16)
    state[c] = wrapping_add(state[c], state[d])
    state[b] = rotate_right(state[b] ^ state[c], 12)
    state[a] = wrapping_add(state[a], wrapping_add(state[b], y))
    state[d] = rotate_right(state[d] ^ state[a], 8)
    state[c] = wrapping_add(state[c], state[d])
    state[b] = rotate_right(state[b] ^ state[c], 7)


def round_function(state, msg_words, schedule):
    # columns
    g(state, 0, 4, 8, 12, msg_words[schedule[0]], msg_words[schedule[1]])
    g(state, 1, 5, 9, 13, msg_words[schedule[2]], msg_words[schedule[3]])
    g(state, 2, 6, 10, 14, msg_words[schedule[4]], msg_words[schedule[5]])
    g(state, 3, 7, 11, 15, msg_words[schedule[6]], msg_words[schedule[7]])
    # diagonals
    g(state, 0, 5, 10, 15, msg_words[schedule[8]], msg_words[schedule[9]])
    g(state, 1, 6, 11, 12, msg_words[schedule[10]], msg_words[schedule[11]])
    g(state, 2, 7, 8, 13, msg_words[schedule[12]], msg_words[schedule[13]])
    g(state, 3, 4, 9, 14, msg_words[schedule[14]], msg_words[schedule[15]])


def words_from_bytes(buf: bytes) -> list:
    assert len(buf) % WORD_BYTES == 0
    return [
        int.from_bytes(buf[i : i + WORD_BYTES], "little")
        for i in range(0, len(buf), WORD_BYTES)
    ]


def bytes_from_words(words) -> bytes:
    return b"".join(word.to_bytes(WORD_BYTES, "little") for word in words)


def compress(
    chaining_value,
    block: bytes,
    block_len: int,
    counter_low: int,
    counter_high: int,
    flags: int,
) -> list:
    """The full BLAKE3 compression function.

    Returns all 16 output words. The first 8 are the new chaining value; the
    whole list is the extended output used by the root.
    """
    assert len(block) == BLOCK_LEN
    assert 0 <= block_len <= BLOCK_LEN
    block_words = words_from_bytes(block)
    state = [
        *chaining_value[:8],
        IV[0],
        IV[1],
        IV[2],
        IV[3],
        counter_low,
        counter_high,
        block_len,
        flags,
    ]
    for schedule in MSG_SCHEDULE:
        round_function(state, block_words, schedule)
    return [state[i] ^ state[i + 8] for i in range(8)] + [
        state[i + 8] ^ chaining_value[i] for i in range(8)
    ]


class Cargo:
    """Bytes staged for compression: a whole chunk for a leaf, or the two
    concatenated child chaining values for a parent."""

    def __init__(self, capacity: int, counter: int = 0):
        self.capacity = capacity
        self.counter = counter
        self.data = bytearray()

    def __repr__(self):
        return f"Cargo({len(self.data)}/{self.capacity}, counter={self.counter})"

    def remaining_capacity(self) -> int:
        return self.capacity - len(self.data)

    def is_full(self) -> bool:
        return len(self.data) == self.capacity

    def ingest(self, data: bytes) -> None:
        if len(data) > self.remaining_capacity():
            raise CapacityExceeded(
                f"{len(data)} bytes offered to {self!r}, "
                f"{self.remaining_capacity()} bytes free"
            )
        self.data += data

    def counter_low(self) -> int:
        return self.counter & WORD_MAX

    def counter_high(self) -> int:
        return (self.counter >> WORD_BITS) & WORD_MAX

    def increment_counter(self) -> None:
        self.counter += 1

    def blocks(self):
        """Yield (padded_block, block_len) pairs. An empty cargo still yields
        one empty block."""
        start = 0
        while True:
            block = bytes(self.data[start : start + BLOCK_LEN])
            yield block.ljust(BLOCK_LEN, b"\0"), len(block)
            start += BLOCK_LEN
            if start >= len(self.data):
                return


class Node:
    """A node of the hash tree, stored in the hasher's arena by index.

    Leaves own a chunk cargo. Parents get a block-sized cargo the first time
    a child's chaining value is folded into them.
    """

    def __init__(self, index: int, cargo=None, is_parent: bool = False):
        self.index = index
        self.cargo = cargo
        self.is_parent = is_parent
        self.parent = None
        self.children = []
        # number of chunks under this node
        self.chunk_count = 1

    def __repr__(self):
        kind = "parent" if self.is_parent else "leaf"
        return f"Node({self.index}, {kind}, chunks={self.chunk_count})"

    def is_root(self) -> bool:
        return self.parent is None

    def get_cargo(self) -> Cargo:
        if self.cargo is None:
            self.cargo = Cargo(BLOCK_LEN)
        return self.cargo


class Hasher:
    """An incremental BLAKE3 hasher with extendable output.

    Feed input with absorb(), then draw any amount of output with squeeze().
    Once squeezing has started no more input is accepted.
    """

    name = "blake3"
    digest_size = OUT_LEN
    block_size = BLOCK_LEN
    key_size = KEY_LEN

    def __init__(self, key: bytes = None):
        if key is not None:
            if len(key) != KEY_LEN:
                raise InvalidKeyLength(f"key must be {KEY_LEN} bytes, got {len(key)}")
            self._key_words = words_from_bytes(bytes(key))
            self._flags = KEYED_HASH
        else:
            self._key_words = IV[:]
            self._flags = 0
        self._nodes = {}
        # completed subtrees, largest first
        self._subtrees = []
        # parents waiting for their children's chaining values, bottom-up
        self._pending_parents = []
        self._cargo = None
        self._chunk_index = 0
        self._node_index = 0
        self._absorbed = 0
        self._squeezed = 0
        self._root = None
        self._root_cv = None
        self._root_flags = 0
        self._root_cargo = None
        self._stream = bytearray()

    @property
    def absorbed(self) -> int:
        return self._absorbed

    @property
    def squeezed(self) -> int:
        return self._squeezed

    def absorb(self, data: bytes) -> "Hasher":
        if self._root_cargo is not None:
            raise StateError("cannot absorb after squeeze")
        data = memoryview(data).cast("B")
        offset = 0
        while offset < len(data):
            cargo = self._chunk_cargo()
            take = min(cargo.remaining_capacity(), len(data) - offset)
            cargo.ingest(data[offset : offset + take])
            offset += take
            self._absorbed += take
            if cargo.is_full():
                self._ship_cargo()
                self._reduce_tree()
        return self

    def squeeze(self, length: int = OUT_LEN) -> bytes:
        if length < 0:
            raise ValueError(f"cannot squeeze {length} bytes")
        if self._root_cargo is None:
            self._finalize()
        cargo = self._root_cargo
        while len(self._stream) < length:
            output = compress(
                self._root_cv,
                bytes(cargo.data).ljust(BLOCK_LEN, b"\0"),
                len(cargo.data),
                cargo.counter_low(),
                cargo.counter_high(),
                self._root_flags,
            )
            self._stream += bytes_from_words(output)
            cargo.increment_counter()
        packet = bytes(self._stream[:length])
        del self._stream[:length]
        self._squeezed += length
        return packet

    def hexsqueeze(self, length: int = OUT_LEN) -> str:
        return self.squeeze(length).hex()

    def _chunk_cargo(self) -> Cargo:
        if self._cargo is None:
            self._cargo = Cargo(CHUNK_LEN, self._chunk_index)
            self._chunk_index += 1
        return self._cargo

    def _new_node(self, cargo=None, is_parent=False) -> Node:
        node = Node(self._node_index, cargo, is_parent)
        self._nodes[node.index] = node
        self._node_index += 1
        return node

    def _join(self, left: Node, right: Node) -> Node:
        parent = self._new_node(is_parent=True)
        parent.children = [left.index, right.index]
        parent.chunk_count = left.chunk_count + right.chunk_count
        left.parent = right.parent = parent.index
        self._pending_parents.append(parent.index)
        return parent

    # Push the pending chunk as a new leaf, then merge the two most recent
    # subtrees while they are the same size. The merges follow the carries
    # of the chunk counter, so the shape depends only on the chunk count.
    def _ship_cargo(self) -> None:
        leaf = self._new_node(self._cargo)
        self._cargo = None
        logger.debug("shipping chunk %d as %r", leaf.cargo.counter, leaf)
        self._subtrees.append(leaf.index)
        while len(self._subtrees) >= 2:
            left = self._nodes[self._subtrees[-2]]
            right = self._nodes[self._subtrees[-1]]
            if left.chunk_count != right.chunk_count:
                break
            del self._subtrees[-2:]
            parent = self._join(left, right)
            logger.debug("merged %r and %r into %r", left, right, parent)
            self._subtrees.append(parent.index)

    # Compress every node whose sibling is in place, fold its chaining value
    # into the parent and release it. Parents are queued in creation order,
    # so a parent's cargo is always complete before its own parent reads it.
    def _reduce_tree(self, force: bool = False) -> None:
        for parent_index in self._pending_parents:
            parent = self._nodes[parent_index]
            for child_index in parent.children:
                child = self._nodes[child_index]
                if not force:
                    assert child.cargo.is_full(), child
                cv, block, block_len, flags = self._chain(child)
                output = compress(
                    cv, block, block_len, *self._counter(child), flags
                )
                parent.get_cargo().ingest(bytes_from_words(output[:8]))
                del self._nodes[child_index]
            parent.children = []
        self._pending_parents = []

    # Run all but the last block of a node through the compression function.
    # Returns the inputs for the final compression, whose output depends on
    # whether the node is the root.
    def _chain(self, node: Node):
        cargo = node.get_cargo()
        if node.is_parent:
            return self._key_words, bytes(cargo.data), BLOCK_LEN, self._flags | PARENT
        cv = self._key_words
        flags = self._flags | CHUNK_START
        last = None
        for block, block_len in cargo.blocks():
            if last is not None:
                cv = compress(cv, *last, *self._counter(node), flags)[:8]
                flags = self._flags
            last = block, block_len
        return cv, last[0], last[1], flags | CHUNK_END

    @staticmethod
    def _counter(node: Node):
        if node.is_parent:
            return 0, 0
        return node.cargo.counter_low(), node.cargo.counter_high()

    def _finalize(self) -> None:
        if self._cargo is None and not self._subtrees:
            # the empty input hashes as one empty chunk
            self._chunk_cargo()
        if self._cargo is not None:
            self._ship_cargo()
        while len(self._subtrees) >= 2:
            right = self._nodes[self._subtrees.pop()]
            left = self._nodes[self._subtrees.pop()]
            self._subtrees.append(self._join(left, right).index)
        self._root = self._subtrees[0]
        self._reduce_tree(force=True)

        root = self._nodes[self._root]
        assert root.is_root() and len(self._nodes) == 1
        cv, block, block_len, flags = self._chain(root)
        self._root_cv = cv
        self._root_flags = flags | ROOT
        # the root's final block, whose counter now counts output blocks
        self._root_cargo = Cargo(BLOCK_LEN)
        self._root_cargo.ingest(block[:block_len])
        logger.debug(
            "finalized %d bytes in %d chunks, root %r",
            self._absorbed,
            self._chunk_index,
            root,
        )


def blake3(data: bytes = b"", key: bytes = None, length: int = OUT_LEN) -> bytes:
    return Hasher(key).absorb(data).squeeze(length)
