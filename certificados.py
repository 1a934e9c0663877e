"""Emissão e validação de certificados de aprovação."""
import hashlib
from datetime import timedelta

from erros import Conflito
from tipos import StatusTentativa


def gerar_codigo(tentativa_id, email, data_emissao):
    """Código de verificação: 12 primeiros caracteres hexadecimais do SHA-256, em maiúsculas."""
    base = f'{tentativa_id}-{email}-{data_emissao.isoformat()}'
    return hashlib.sha256(base.encode('utf-8')).hexdigest()[:12].upper()


def calcular_validade(data_emissao, validade_dias):
    if not validade_dias:
        return None
    return data_emissao + timedelta(days=validade_dias)


def verificar_elegibilidade(tentativa, nota_minima):
    if tentativa.status != StatusTentativa.SUBMETIDA:
        raise Conflito('A tentativa ainda não foi finalizada.')
    if tentativa.nota is None or tentativa.nota < nota_minima:
        raise Conflito('Certificado disponível apenas para tentativas aprovadas.',
                       nota=tentativa.nota, nota_minima=nota_minima)


def situacao(data_validade, agora):
    if data_validade is not None and agora > data_validade:
        return {'valido': False, 'expirado': True}
    return {'valido': True, 'expirado': False}
