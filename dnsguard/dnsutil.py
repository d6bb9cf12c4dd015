"""Helpers for building and inspecting DNS messages."""

from __future__ import annotations

import fnmatch
import ipaddress

import dns.message
import dns.rdataclass
import dns.rdatatype
import dns.rrset


def extract_domain(question: dns.rrset.RRset) -> str:
    """Return the question's domain name in lower case without the trailing dot."""
    return question.name.to_text().rstrip(".").lower()


def new_msg_with_question(name: str, qtype) -> dns.message.Message:
    """Build a query message with a single question."""
    return dns.message.make_query(name, qtype)


def new_msg_with_answer(name: str, ttl: int, qtype, data: str) -> dns.message.Message:
    """Build a message holding a single answer record parsed from text."""
    msg = dns.message.Message()
    msg.answer.append(dns.rrset.from_text(name, ttl, dns.rdataclass.IN, qtype, data))
    return msg


def create_answer(question: dns.rrset.RRset, ip, ttl: int) -> dns.rrset.RRset:
    """Create an A or AAAA record answering the question with the given address."""
    if question.rdtype not in (dns.rdatatype.A, dns.rdatatype.AAAA):
        raise ValueError(f"unsupported question type {dns.rdatatype.to_text(question.rdtype)}")
    return dns.rrset.from_text(question.name, ttl, dns.rdataclass.IN, question.rdtype, str(ip))


def answer_to_string(answer) -> str:
    """Render answer records as 'TYPE (data)' joined by ', '."""
    return ", ".join(
        f"{dns.rdatatype.to_text(rrset.rdtype)} ({rdata.to_text()})"
        for rrset in answer
        for rdata in rrset
    )


def question_to_string(questions) -> str:
    """Render questions as 'TYPE (name)' joined by ', '."""
    return ", ".join(
        f"{dns.rdatatype.to_text(q.rdtype)} ({q.name.to_text()})" for q in questions
    )


def client_name_matches_group_name(group: str, client_name: str) -> bool:
    """Match a client name against a group name that may hold wildcards."""
    return fnmatch.fnmatchcase(client_name, group)


def cidr_contains_ip(cidr: str, ip) -> bool:
    """Whether ``ip`` lies in the network ``cidr``; False for anything invalid."""
    if ip is None or "/" not in cidr:
        return False
    try:
        network = ipaddress.ip_network(cidr, strict=False)
        address = ipaddress.ip_address(str(ip))
    except ValueError:
        return False
    return address.version == network.version and address in network