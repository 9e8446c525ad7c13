"""
Native side of xtcrelay: libiptc / libip6tc and the xtables lock.

libiptc and libip6tc are reached through cffi in ABI mode: the structures
below mirror <linux/netfilter_ipv4/ip_tables.h> and
<linux/netfilter_ipv6/ip6_tables.h> exactly, so no headers or compiler are
needed to load them, and `ffi.new("struct ipt_entry *")` works even on a
machine without iptables installed.

The xtables lock is a small C helper compiled on first use with
`ffi.verify()`. It takes an exclusive flock() on the same lock file the
iptables tools use, and remembers the descriptor process-wide so that
taking it twice or releasing it while not held is reported with errno.

Nothing in this module is thread-safe: every function exported by the
loaded libraries must only be called from the relay worker thread.

Requirements:
    - Python 3.8+
    - cffi>=1.0.0
    - setuptools (required for Python 3.12+ to compile the lock helper)
    - libip4tc / libip6tc shared libraries (iptables package)
"""

import os
import sys
import threading
from typing import Dict, List, Optional

from cffi import FFI

# Check Python version
if sys.version_info < (3, 8):
    raise RuntimeError("Python 3.8 or higher is required")

IFNAMSIZ = 16

# Inversion flags, identical for ip_tables and ip6_tables
IPT_INV_VIA_IN = 0x01
IPT_INV_VIA_OUT = 0x02
IPT_INV_TOS = 0x04
IPT_INV_SRCIP = 0x08
IPT_INV_DSTIP = 0x10
IPT_INV_FRAG = 0x20
IPT_INV_PROTO = 0x40

# libiptc declarations, instantiated once per prefix/entry type
_TC_FUNCTIONS = """
struct xtc_handle *{tc}_init(const char *tablename);
void {tc}_free(struct xtc_handle *h);
int {tc}_is_chain(const char *chain, struct xtc_handle *const handle);
const char *{tc}_first_chain(struct xtc_handle *handle);
const char *{tc}_next_chain(struct xtc_handle *handle);
const struct {entry} *{tc}_first_rule(const char *chain, struct xtc_handle *handle);
const struct {entry} *{tc}_next_rule(const struct {entry} *prev, struct xtc_handle *handle);
const char *{tc}_get_target(const struct {entry} *e, struct xtc_handle *handle);
int {tc}_builtin(const char *chain, struct xtc_handle *const handle);
const char *{tc}_get_policy(const char *chain, struct xt_counters *counter, struct xtc_handle *handle);
int {tc}_insert_entry(const char *chain, const struct {entry} *e, unsigned int rulenum, struct xtc_handle *handle);
int {tc}_append_entry(const char *chain, const struct {entry} *e, struct xtc_handle *handle);
int {tc}_check_entry(const char *chain, const struct {entry} *origfw, unsigned char *matchmask, struct xtc_handle *handle);
int {tc}_delete_entry(const char *chain, const struct {entry} *origfw, unsigned char *matchmask, struct xtc_handle *handle);
int {tc}_delete_num_entry(const char *chain, unsigned int rulenum, struct xtc_handle *handle);
int {tc}_flush_entries(const char *chain, struct xtc_handle *handle);
int {tc}_zero_entries(const char *chain, struct xtc_handle *handle);
int {tc}_create_chain(const char *chain, struct xtc_handle *handle);
int {tc}_delete_chain(const char *chain, struct xtc_handle *handle);
int {tc}_rename_chain(const char *oldname, const char *newname, struct xtc_handle *handle);
int {tc}_set_policy(const char *chain, const char *policy, struct xt_counters *counters, struct xtc_handle *handle);
int {tc}_get_references(unsigned int *ref, const char *chain, struct xtc_handle *handle);
struct xt_counters *{tc}_read_counter(const char *chain, unsigned int rulenum, struct xtc_handle *handle);
int {tc}_zero_counter(const char *chain, unsigned int rulenum, struct xtc_handle *handle);
int {tc}_set_counter(const char *chain, unsigned int rulenum, struct xt_counters *counters, struct xtc_handle *handle);
int {tc}_commit(struct xtc_handle *handle);
const char *{tc}_strerror(int err);
void {dump}(struct xtc_handle *const handle);
"""

# Define FFI interface
ffi = FFI()
ffi.cdef("""
struct xtc_handle;

struct xt_counters {
    uint64_t pcnt, bcnt;
};

struct in_addr {
    uint32_t s_addr;
};

struct in6_addr {
    union {
        uint8_t u6_addr8[16];
        uint16_t u6_addr16[8];
        uint32_t u6_addr32[4];
    } __in6_u;
};

struct ipt_ip {
    struct in_addr src, dst;
    struct in_addr smsk, dmsk;
    char iniface[16], outiface[16];
    unsigned char iniface_mask[16], outiface_mask[16];
    uint16_t proto;
    uint8_t flags;
    uint8_t invflags;
};

struct ipt_entry {
    struct ipt_ip ip;
    unsigned int nfcache;
    uint16_t target_offset;
    uint16_t next_offset;
    unsigned int comefrom;
    struct xt_counters counters;
    unsigned char elems[];
};

struct ip6t_ip6 {
    struct in6_addr src, dst;
    struct in6_addr smsk, dmsk;
    char iniface[16], outiface[16];
    unsigned char iniface_mask[16], outiface_mask[16];
    uint16_t proto;
    uint8_t tos;
    uint8_t flags;
    uint8_t invflags;
};

struct ip6t_entry {
    struct ip6t_ip6 ipv6;
    unsigned int nfcache;
    uint16_t target_offset;
    uint16_t next_offset;
    unsigned int comefrom;
    struct xt_counters counters;
    unsigned char elems[];
};
""")
ffi.cdef(_TC_FUNCTIONS.format(tc="iptc", entry="ipt_entry", dump="dump_entries"))
ffi.cdef(_TC_FUNCTIONS.format(tc="ip6tc", entry="ip6t_entry", dump="dump_entries6"))

# family -> (function prefix, entry struct, dump function)
FAMILIES = {
    'ipv4': ("iptc", "struct ipt_entry", "dump_entries"),
    'ipv6': ("ip6tc", "struct ip6t_entry", "dump_entries6"),
}

_libraries: Dict[str, object] = {}
_libraries_lock = threading.Lock()


def load_library(family: str, candidates: List[str]):
    """
    dlopen() the libiptc variant for `family`, trying each soname in turn.
    The handle is cached for the life of the process.

    Raises:
        ValueError: unknown family
        OSError: none of the candidates could be loaded
    """
    if family not in FAMILIES:
        raise ValueError(f"Invalid family: {family}. Use 'ipv4' or 'ipv6'")

    with _libraries_lock:
        if family in _libraries:
            return _libraries[family]

        errors = []
        for name in candidates:
            try:
                lib = ffi.dlopen(name)
            except OSError as e:
                errors.append(f"{name}: {e}")
                continue
            _libraries[family] = lib
            return lib

    raise OSError(
        f"Cannot load {family} rule table library (tried {', '.join(candidates)}):\n  "
        + "\n  ".join(errors)
    )


class ErrnoProbe:
    """
    Reads and resets errno of the calling thread as saved by cffi after
    each native call. Only meaningful on the thread that made the call.
    """

    def reset(self) -> None:
        ffi.errno = 0

    def last_errno(self) -> int:
        return ffi.errno


# C library source code - xtables lock helper
LOCK_SOURCE = r"""
#include <errno.h>
#include <fcntl.h>
#include <sys/file.h>
#include <time.h>
#include <unistd.h>

// descriptor holding the lock, shared by the whole process
static int xtc_lock_fd = -1;

static void xtc_sleep_us(unsigned int usec) {
    struct timespec ts;
    ts.tv_sec = usec / 1000000;
    ts.tv_nsec = (long)(usec % 1000000) * 1000;
    while (nanosleep(&ts, &ts) != 0 && errno == EINTR)
        ;
}

// 0 - acquired, 1 - failure with errno set
int xtc_lock_acquire(const char *path, int wait, unsigned int max_seconds,
                     unsigned int interval_us) {
    if (xtc_lock_fd >= 0) {
        errno = EALREADY;
        return 1;
    }

    int fd = open(path, O_CREAT | O_CLOEXEC, 0600);
    if (fd < 0)
        return 1;

    unsigned long long waited_us = 0;
    unsigned long long max_us = (unsigned long long)max_seconds * 1000000ULL;

    while (flock(fd, LOCK_EX | LOCK_NB) != 0) {
        int saved = errno;
        if (saved == EINTR)
            continue;
        if (saved != EWOULDBLOCK || !wait) {
            close(fd);
            errno = saved;
            return 1;
        }
        // max_seconds == 0 waits forever, like iptables --wait
        if (max_seconds > 0 && waited_us >= max_us) {
            close(fd);
            errno = ETIMEDOUT;
            return 1;
        }
        xtc_sleep_us(interval_us);
        waited_us += interval_us;
    }

    xtc_lock_fd = fd;
    return 0;
}

// 0 - released, 1 - failure with errno set
int xtc_lock_release(void) {
    if (xtc_lock_fd < 0) {
        errno = ENOLCK;
        return 1;
    }

    int fd = xtc_lock_fd;
    xtc_lock_fd = -1;
    if (close(fd) != 0)
        return 1;

    return 0;
}

int xtc_lock_held(void) {
    return xtc_lock_fd >= 0;
}
"""

lock_ffi = FFI()
lock_ffi.cdef("""
int xtc_lock_acquire(const char *path, int wait, unsigned int max_seconds, unsigned int interval_us);
int xtc_lock_release(void);
int xtc_lock_held(void);
""")

_lock_lib = None


def load_lock_helper():
    """Compile (or load the cached build of) the xtables lock helper"""
    global _lock_lib

    with _libraries_lock:
        if _lock_lib is not None:
            return _lock_lib
        try:
            _lock_lib = lock_ffi.verify(LOCK_SOURCE, modulename="xtcrelay_lock_v1")
        except Exception as e:
            print(f"Error compiling xtables lock helper: {e}", file=sys.stderr)
            print("This might be a CFFI caching issue. Try removing the __pycache__ directory.", file=sys.stderr)
            try:
                import setuptools  # noqa
            except ImportError:
                raise RuntimeError(
                    "Python 3.12+ requires setuptools.\n"
                    "Install it with: pip install setuptools"
                ) from e
            raise
        return _lock_lib


class NativeLockPrimitive:
    """
    The xtables advisory lock as seen by XtablesLock.

    acquire()/release() return the helper's raw 0/1 code; errno is left
    for the relay's probe to read.
    """

    def __init__(self, lock_file: str, wait_interval: float = 1.0, lib=None):
        self.lock_file = lock_file
        self.wait_interval = wait_interval
        self._lib = lib

    @property
    def lib(self):
        if self._lib is None:
            self._lib = load_lock_helper()
        return self._lib

    def acquire(self, wait: bool, timeout: int) -> int:
        interval_us = max(1, int(self.wait_interval * 1000000))
        return self.lib.xtc_lock_acquire(
            self.lock_file.encode('utf-8'), int(bool(wait)), int(timeout), interval_us
        )

    def release(self) -> int:
        return self.lib.xtc_lock_release()

    def is_held(self) -> bool:
        return bool(self.lib.xtc_lock_held())

    def describe_error(self, errno: int) -> str:
        return os.strerror(errno) if errno else ""


def lock_primitive_from_config(config) -> NativeLockPrimitive:
    return NativeLockPrimitive(config.lock_file, config.lock_wait_interval)


def c_string(value: Optional[object]) -> Optional[str]:
    """Convert a `const char *` result to str, None for NULL"""
    if value is None or value == ffi.NULL:
        return None
    return ffi.string(value).decode('utf-8', errors='replace')
