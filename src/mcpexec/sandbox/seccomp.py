"""
Seccomp profile for the container sandboxes.

Default action is ERRNO; only the syscalls an interpreter needs are
allowed. The deny list is applied explicitly as well so that it holds
even if someone widens the allowlist.
"""

from __future__ import annotations

import json
from pathlib import Path

DENIED_SYSCALLS = (
    "mount", "umount2", "chroot", "pivot_root", "ptrace",
    "init_module", "finit_module", "delete_module",
    "settimeofday", "clock_settime", "adjtimex",
    "sethostname", "setdomainname", "kexec_load", "reboot",
)

ALLOWED_SYSCALLS = (
    "accept", "accept4", "access", "arch_prctl", "brk", "capget", "capset", "chdir", "chmod",
    "clock_getres", "clock_gettime", "clock_nanosleep", "clone", "clone3", "close", "close_range",
    "copy_file_range", "dup", "dup2", "dup3", "epoll_create", "epoll_create1", "epoll_ctl",
    "epoll_pwait", "epoll_pwait2", "epoll_wait", "eventfd", "eventfd2", "execve", "execveat",
    "exit", "exit_group", "faccessat", "faccessat2", "fadvise64", "fallocate", "fchdir", "fchmod",
    "fchmodat", "fchown", "fchownat", "fcntl", "fdatasync", "flock", "fstat", "fstatfs", "fsync",
    "ftruncate", "futex", "futex_waitv", "getcwd", "getdents", "getdents64", "getegid", "geteuid",
    "getgid", "getgroups", "getitimer", "getpeername", "getpgid", "getpgrp", "getpid", "getppid",
    "getpriority", "getrandom", "getresgid", "getresuid", "getrlimit", "getrusage", "getsid",
    "getsockname", "getsockopt", "gettid", "gettimeofday", "getuid", "getxattr", "inotify_add_watch",
    "inotify_init", "inotify_init1", "inotify_rm_watch", "ioctl", "kill", "lgetxattr", "link",
    "linkat", "listxattr", "lseek", "lstat", "madvise", "membarrier", "memfd_create", "mincore",
    "mkdir", "mkdirat", "mlock", "mmap", "mprotect", "mremap", "msync", "munlock", "munmap",
    "nanosleep", "newfstatat", "open", "openat", "openat2", "pause", "pipe", "pipe2", "poll",
    "ppoll", "prctl", "pread64", "preadv", "preadv2", "prlimit64", "pselect6", "pwrite64",
    "pwritev", "pwritev2", "read", "readahead", "readlink", "readlinkat", "readv", "recvfrom",
    "recvmmsg", "recvmsg", "rename", "renameat", "renameat2", "restart_syscall", "rmdir", "rseq",
    "rt_sigaction", "rt_sigpending", "rt_sigprocmask", "rt_sigqueueinfo", "rt_sigreturn",
    "rt_sigsuspend", "rt_sigtimedwait", "sched_getaffinity", "sched_getparam", "sched_getscheduler",
    "sched_get_priority_max", "sched_get_priority_min", "sched_yield", "select", "sendfile",
    "sendmmsg", "sendmsg", "sendto", "set_robust_list", "set_tid_address", "setitimer",
    "setpgid", "setsid", "setsockopt", "shutdown", "sigaltstack", "socket", "socketpair",
    "splice", "stat", "statfs", "statx", "symlink", "symlinkat", "sysinfo", "tee", "tgkill",
    "time", "timer_create", "timer_delete", "timer_getoverrun", "timer_gettime", "timer_settime",
    "timerfd_create", "timerfd_gettime", "timerfd_settime", "times", "tkill", "truncate", "umask",
    "uname", "unlink", "unlinkat", "utime", "utimensat", "utimes", "vfork", "wait4", "waitid",
    "write", "writev",
)


def build_profile() -> dict:
    """Docker/OCI seccomp profile with an explicit allowlist."""
    allowed = sorted(set(ALLOWED_SYSCALLS) - set(DENIED_SYSCALLS))
    return {
        "defaultAction": "SCMP_ACT_ERRNO",
        "defaultErrnoRet": 1,
        "archMap": [
            {"architecture": "SCMP_ARCH_X86_64", "subArchitectures": ["SCMP_ARCH_X86", "SCMP_ARCH_X32"]},
            {"architecture": "SCMP_ARCH_AARCH64", "subArchitectures": ["SCMP_ARCH_ARM"]},
        ],
        "syscalls": [
            {"names": allowed, "action": "SCMP_ACT_ALLOW"},
            {"names": list(DENIED_SYSCALLS), "action": "SCMP_ACT_ERRNO", "errnoRet": 1},
        ],
    }


def write_profile(directory: str | Path) -> Path:
    path = Path(directory) / "seccomp.json"
    path.write_text(json.dumps(build_profile(), indent=2))
    path.chmod(0o644)
    return path
