"""Enumerações compartilhadas entre os modelos e as regras de negócio."""
import enum


class Role(str, enum.Enum):
    SUPERADMIN = 'SUPERADMIN'
    DOCENTE = 'DOCENTE'
    ALUNO = 'ALUNO'


class StatusSimulado(str, enum.Enum):
    ATIVO = 'ATIVO'
    INATIVO = 'INATIVO'
    EM_EDICAO = 'EM_EDICAO'


class Dificuldade(str, enum.Enum):
    FACIL = 'FACIL'
    MEDIO = 'MEDIO'
    DIFICIL = 'DIFICIL'


# Ordem fixa em que os blocos de dificuldade são concatenados numa prova.
ORDEM_DIFICULDADES = (Dificuldade.FACIL, Dificuldade.MEDIO, Dificuldade.DIFICIL)


class TipoQuestao(str, enum.Enum):
    MULTIPLA_ESCOLHA_UNICA = 'MULTIPLA_ESCOLHA_UNICA'
    MULTIPLA_ESCOLHA_MULTIPLA = 'MULTIPLA_ESCOLHA_MULTIPLA'
    ORDENACAO = 'ORDENACAO'
    ASSOCIACAO = 'ASSOCIACAO'
    LACUNA = 'LACUNA'
    DRAG_DROP = 'DRAG_DROP'
    HOTSPOT = 'HOTSPOT'
    COMANDO = 'COMANDO'


class StatusProva(str, enum.Enum):
    RASCUNHO = 'RASCUNHO'
    PUBLICADA = 'PUBLICADA'
    ENCERRADA = 'ENCERRADA'


class NotaConsiderada(str, enum.Enum):
    MAIOR = 'MAIOR'
    ULTIMA = 'ULTIMA'


class MostrarResultado(str, enum.Enum):
    IMEDIATO = 'IMEDIATO'
    DATA = 'DATA'
    NUNCA = 'NUNCA'


class StatusTentativa(str, enum.Enum):
    EM_ANDAMENTO = 'EM_ANDAMENTO'
    SUBMETIDA = 'SUBMETIDA'


class TipoNotificacao(str, enum.Enum):
    NOVA_PROVA = 'NOVA_PROVA'
    RESULTADO_DISPONIVEL = 'RESULTADO_DISPONIVEL'
    TURMA = 'TURMA'
    SISTEMA = 'SISTEMA'


def valores(enumeracao):
    """Lista os valores de uma enumeração, no formato esperado por SelectField."""
    return [(item.value, item.value) for item in enumeracao]
